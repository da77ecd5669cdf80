"""Readiness queries over a Graph Index snapshot.

All functions here are pure: they take a loaded index (and content map where
needed) and never touch disk.
"""

from __future__ import annotations

import math
from typing import Optional

from .models import (
    GraphError,
    GraphIndex,
    GroupStatus,
    Requirement,
    RequirementFiles,
    RequirementStatus,
)


def _is_group_complete(index: GraphIndex, group_key: str) -> bool:
    for meta in index.requirements.values():
        if meta.group != group_key or meta.status == RequirementStatus.REJECTED:
            continue
        if meta.status != RequirementStatus.COMPLETE:
            return False
    return True


def _group_blockers(index: GraphIndex, group_key: str) -> list[str]:
    group = index.groups.get(group_key)
    if group is None:
        return []
    return [dep for dep in group.depends_on if not _is_group_complete(index, dep)]


def _topo_sort_groups(index: GraphIndex) -> list[str]:
    # Visit in (order, key) sequence so independent groups keep a stable order.
    ordered = sorted(
        index.groups,
        key=lambda key: (index.groups[key].order if index.groups[key].order is not None else math.inf, key),
    )
    visited: set[str] = set()
    visiting: set[str] = set()
    result: list[str] = []

    def visit(key: str) -> None:
        if key in visited or key in visiting:
            return
        visiting.add(key)
        for dep in index.groups[key].depends_on:
            if dep in index.groups:
                visit(dep)
        visiting.discard(key)
        visited.add(key)
        result.append(key)

    for key in ordered:
        visit(key)
    return result


def find_ready(index: GraphIndex) -> list[str]:
    """Return pending requirement ids whose dependencies are all complete.

    Requirement-level `dependsOn` entries must be `complete`, and every group
    the requirement's group depends on must be fully complete. Results are
    ordered by priority (high first), then group topological order, then the
    order requirements appear in the index.
    """
    group_rank = {key: pos for pos, key in enumerate(_topo_sort_groups(index))}
    insertion = {req_id: pos for pos, req_id in enumerate(index.requirements)}

    ready: list[str] = []
    for req_id, meta in index.requirements.items():
        if meta.status != RequirementStatus.PENDING:
            continue
        deps_done = all(
            dep in index.requirements and index.requirements[dep].status == RequirementStatus.COMPLETE
            for dep in meta.depends_on
        )
        if not deps_done or _group_blockers(index, meta.group):
            continue
        ready.append(req_id)

    ready.sort(
        key=lambda req_id: (
            -index.requirements[req_id].priority,
            group_rank.get(index.requirements[req_id].group, math.inf),
            insertion[req_id],
        )
    )
    return ready


def find_blocked(index: GraphIndex) -> list[dict[str, object]]:
    """Return pending requirements that are waiting, with what they wait on.

    Group-level blockers are reported as `group:<key>`.
    """
    blocked: list[dict[str, object]] = []
    for req_id, meta in index.requirements.items():
        if meta.status != RequirementStatus.PENDING:
            continue
        blockers = [
            dep
            for dep in meta.depends_on
            if dep not in index.requirements or index.requirements[dep].status != RequirementStatus.COMPLETE
        ]
        blockers.extend(f"group:{key}" for key in _group_blockers(index, meta.group))
        if blockers:
            blocked.append({"id": req_id, "blocked_by": blockers})
    return blocked


def get_transitive_deps(index: GraphIndex, requirement_id: str) -> list[str]:
    """Return `requirement_id` and all of its ancestors in topological order.

    Dependencies come first and the target itself is last.

    Raises:
        GraphError: If the dependency chain contains a cycle.
    """
    result: list[str] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(current: str) -> None:
        if current in visited:
            return
        if current in visiting:
            raise GraphError(f"Cycle detected: {current} is part of a dependency cycle")
        visiting.add(current)
        meta = index.requirements.get(current)
        if meta is not None:
            for dep in meta.depends_on:
                visit(dep)
        visiting.discard(current)
        visited.add(current)
        result.append(current)

    visit(requirement_id)
    return result


def is_project_complete(index: GraphIndex) -> bool:
    """True when every requirement that is not rejected is complete.

    `discovered` requirements keep the project open until they are promoted
    and completed, or rejected.
    """
    return all(
        meta.status in (RequirementStatus.COMPLETE, RequirementStatus.REJECTED)
        for meta in index.requirements.values()
    )


def find_discovered(index: GraphIndex) -> list[str]:
    return [req_id for req_id, meta in index.requirements.items() if meta.status == RequirementStatus.DISCOVERED]


def find_in_progress(index: GraphIndex) -> list[str]:
    return [req_id for req_id, meta in index.requirements.items() if meta.status == RequirementStatus.IN_PROGRESS]


def build_requirement_context(
    index: GraphIndex,
    requirements: dict[str, Requirement],
    target_id: str,
) -> list[dict[str, object]]:
    """Collect upstream requirements to brief the agent working on `target_id`.

    Returns one entry per resolved transitive dependency (topological order,
    target excluded) with its content, index status, acceptance statements,
    and file scope. Ids missing from `requirements` are skipped.
    """
    context: list[dict[str, object]] = []
    for dep_id in get_transitive_deps(index, target_id):
        if dep_id == target_id:
            continue
        req = requirements.get(dep_id)
        if req is None:
            continue
        meta = index.requirements.get(dep_id)
        context.append(
            {
                "id": dep_id,
                "title": req.title,
                "status": meta.status.value if meta else "unknown",
                "acceptance": list(req.acceptance),
                "files": req.files.to_dict(),
                "body": req.body,
            }
        )
    return context


def compute_waves(
    ready_ids: list[str],
    requirements: dict[str, Requirement],
    file_overrides: Optional[dict[str, RequirementFiles]] = None,
) -> list[list[str]]:
    """Greedily batch ready ids into file-disjoint waves.

    Waves describe which requirements could share a batch; the runner still
    executes ready requirements one at a time.
    """
    waves: list[list[str]] = []
    wave_files: list[set[str]] = []

    def files_for(req_id: str) -> list[str]:
        if file_overrides and req_id in file_overrides:
            return file_overrides[req_id].all_paths()
        req = requirements.get(req_id)
        return req.files.all_paths() if req else []

    for req_id in ready_ids:
        files = files_for(req_id)
        for pos, taken in enumerate(wave_files):
            if not any(path in taken for path in files):
                waves[pos].append(req_id)
                taken.update(files)
                break
        else:
            waves.append([req_id])
            wave_files.append(set(files))
    return waves


def group_status(index: GraphIndex) -> dict[str, GroupStatus]:
    result = {key: GroupStatus() for key in index.groups}
    counters = {
        RequirementStatus.COMPLETE: "complete",
        RequirementStatus.IN_PROGRESS: "in_progress",
        RequirementStatus.PENDING: "pending",
        RequirementStatus.DISCOVERED: "discovered",
        RequirementStatus.REJECTED: "rejected",
    }
    for meta in index.requirements.values():
        status = result.get(meta.group)
        if status is None:
            continue
        status.total += 1
        attr = counters[meta.status]
        setattr(status, attr, getattr(status, attr) + 1)
    for status in result.values():
        non_rejected = status.total - status.rejected
        status.is_complete = status.complete == non_rejected
    return result
