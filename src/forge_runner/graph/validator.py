"""Structural validation of a loaded project graph.

`validate_graph` never stops at the first problem; it returns every issue it
finds so a caller can report them all at once. Nothing here repairs the graph.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Callable, Optional

from .models import GraphIndex, ProjectGraph, Requirement, ValidationIssue

_UNVISITED = 0
_VISITING = 1
_DONE = 2


def validate_graph(graph: ProjectGraph) -> list[ValidationIssue]:
    index = graph.index
    issues: list[ValidationIssue] = []

    req_cycle = _detect_requirement_cycle(index)
    if req_cycle:
        issues.append(
            ValidationIssue(
                "cycle",
                f"Requirement dependency cycle: {' -> '.join(req_cycle)}",
                {"cycle": req_cycle, "level": "requirement"},
            )
        )

    group_cycle = _detect_group_cycle(index)
    if group_cycle:
        issues.append(
            ValidationIssue(
                "cycle",
                f"Group dependency cycle: {' -> '.join(group_cycle)}",
                {"cycle": group_cycle, "level": "group"},
            )
        )

    for edge in find_dangling_edges(index):
        issues.append(
            ValidationIssue(
                "dangling_dep",
                f'{edge["level"]} "{edge["from"]}" depends on non-existent {edge["level"]} "{edge["to"]}"',
                edge,
            )
        )

    for req_id in index.requirements:
        if req_id not in graph.requirements:
            issues.append(
                ValidationIssue(
                    "missing_file",
                    f'Requirement "{req_id}" is in the index but has no matching .md file',
                    {"id": req_id},
                )
            )

    for req_id in find_orphans(graph):
        issues.append(
            ValidationIssue(
                "orphan_requirement",
                f'Requirement file "{req_id}" exists but is not tracked in the index',
                {"id": req_id},
            )
        )

    for req_id, meta in index.requirements.items():
        if meta.group not in index.groups:
            issues.append(
                ValidationIssue(
                    "unknown_group",
                    f'Requirement "{req_id}" references unknown group "{meta.group}"',
                    {"id": req_id, "group": meta.group},
                )
            )

    for conflict in find_file_conflicts(graph.requirements, index):
        issues.append(
            ValidationIssue(
                "file_conflict",
                f'File "{conflict["file"]}" is touched by multiple parallelizable requirements: '
                f'{", ".join(conflict["requirements"])}',
                conflict,
            )
        )

    return issues


def detect_cycles(index: GraphIndex) -> Optional[list[str]]:
    """Return the first cycle path found (requirement level first, then group level)."""
    return _detect_requirement_cycle(index) or _detect_group_cycle(index)


def _detect_requirement_cycle(index: GraphIndex) -> Optional[list[str]]:
    return _find_cycle(
        list(index.requirements),
        lambda node: index.requirements[node].depends_on if node in index.requirements else [],
    )


def _detect_group_cycle(index: GraphIndex) -> Optional[list[str]]:
    return _find_cycle(
        list(index.groups),
        lambda node: index.groups[node].depends_on if node in index.groups else [],
    )


def _find_cycle(nodes: list[str], neighbors: Callable[[str], list[str]]) -> Optional[list[str]]:
    """Three-state DFS over id-keyed adjacency.

    On a back-edge to a node still on the stack, returns the cycle path from
    that node around to itself, e.g. `["A", "B", "C", "A"]`. Edges to unknown
    ids are skipped here; they are reported as dangling separately.
    """
    state = {node: _UNVISITED for node in nodes}
    path: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        state[node] = _VISITING
        path.append(node)
        for nxt in neighbors(node):
            nxt_state = state.get(nxt)
            if nxt_state is None or nxt_state == _DONE:
                continue
            if nxt_state == _VISITING:
                start = path.index(nxt)
                return path[start:] + [nxt]
            cycle = visit(nxt)
            if cycle:
                return cycle
        path.pop()
        state[node] = _DONE
        return None

    for node in nodes:
        if state[node] == _UNVISITED:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def find_dangling_edges(index: GraphIndex) -> list[dict[str, str]]:
    dangling: list[dict[str, str]] = []
    for req_id, meta in index.requirements.items():
        for dep in meta.depends_on:
            if dep not in index.requirements:
                dangling.append({"from": req_id, "to": dep, "level": "requirement"})
    for key, group in index.groups.items():
        for dep in group.depends_on:
            if dep not in index.groups:
                dangling.append({"from": key, "to": dep, "level": "group"})
    return dangling


def find_orphans(graph: ProjectGraph) -> list[str]:
    return [req_id for req_id in graph.requirements if req_id not in graph.index.requirements]


def find_file_conflicts(
    requirements: dict[str, Requirement],
    index: GraphIndex,
) -> list[dict[str, object]]:
    """Find files touched by requirements that could run side by side.

    Two requirements could run in parallel when they share a group and neither
    lists the other as a direct dependency.
    """
    file_to_reqs: dict[str, list[str]] = defaultdict(list)
    for req_id, req in requirements.items():
        if req_id not in index.requirements:
            continue
        for path in req.files.all_paths():
            if req_id not in file_to_reqs[path]:
                file_to_reqs[path].append(req_id)

    conflicts: list[dict[str, object]] = []
    for path, req_ids in file_to_reqs.items():
        if len(req_ids) < 2:
            continue
        parallel = _parallelizable(req_ids, index)
        if len(parallel) >= 2:
            conflicts.append({"file": path, "requirements": parallel})
    return conflicts


def _parallelizable(req_ids: list[str], index: GraphIndex) -> list[str]:
    by_group: dict[str, list[str]] = defaultdict(list)
    for req_id in req_ids:
        by_group[index.requirements[req_id].group].append(req_id)

    result: list[str] = []
    for members in by_group.values():
        if len(members) < 2:
            continue
        deps = {req_id: set(index.requirements[req_id].depends_on) for req_id in members}
        for req_id in members:
            if any(
                other != req_id and other not in deps[req_id] and req_id not in deps[other]
                for other in members
            ):
                result.append(req_id)
    return result
