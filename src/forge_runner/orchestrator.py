"""Drive a requirement graph to completion, one isolated worktree at a time.

For each ready requirement the runner flips it to `in_progress`, gives the
agent a fresh worktree, and retries agent + verification up to the iteration
budget. Only a passing attempt is merged (fast-forward only) and marked
`complete`. Every fatal outcome leaves the index consistent and raises a
`RunAborted` subclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from .agent import AgentRunner
from .config import ForgeConfig, linear_api_key, load_config
from .constants import SESSION_STATUS_COMPLETING
from .errors import DeadlockError, InvalidGraphError, IterationBudgetExceeded, RunAborted
from .gates import GateError, GateResult, PipelineInput, PipelineResult, run_pipeline, write_verify_cache
from .graph.models import GraphIndex, Requirement, RequirementStatus
from .graph.query import (
    build_requirement_context,
    find_blocked,
    find_discovered,
    find_in_progress,
    find_ready,
    get_transitive_deps,
    is_project_complete,
)
from .graph.store import GraphStore, load_and_validate
from .logging_utils import summarize_pipeline
from .prompts import build_requirement_prompt
from .tracker import IssueSync
from .worktree import manager as wt
from .worktree import session as sessions
from .worktree.identity import get_current_user

Verifier = Callable[[PipelineInput], PipelineResult]

# Issues that do not stop a sequential run.
NON_FATAL_ISSUES = frozenset({"file_conflict", "orphan_requirement"})


class Agent(Protocol):
    def run(self, prompt: str, cwd: Path) -> Any: ...


class GitWorktrees:
    """Worktree and session operations the runner needs, bound to one repository."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = Path(repo_root)
        self.user = get_current_user(self.repo_root)

    def ensure_branch(self, branch: str) -> None:
        wt.ensure_branch(self.repo_root, branch)

    def create(self, name: str, base_branch: str, branch: str) -> wt.WorktreeHandle:
        leftover = wt.get_worktree_base_dir(self.repo_root) / name
        if leftover.exists():
            logger.warning("Removing leftover worktree {}", leftover)
            wt.remove_worktree(self.repo_root, leftover)
        return wt.create_worktree(self.repo_root, name, base_branch=base_branch, branch_name=branch, dir_name=name)

    def register(self, handle: wt.WorktreeHandle, requirement_id: str) -> str:
        session = sessions.register_session(
            self.repo_root,
            user=self.user,
            branch=handle.branch,
            worktree_path=handle.path,
            requirement=requirement_id,
            session_id=handle.session_id,
        )
        return session.id

    def mark_completing(self, session_id: str) -> None:
        sessions.update_session_status(self.repo_root, session_id, SESSION_STATUS_COMPLETING)

    def deregister(self, session_id: str) -> None:
        sessions.deregister_session(self.repo_root, session_id)

    def commit_pending(self, path: Path, message: str) -> None:
        wt.commit_pending_changes(path, message)

    def merge(self, branch: str, base_branch: str) -> None:
        wt.merge_fast_forward(self.repo_root, branch, base_branch)

    def remove(self, path: Path) -> None:
        wt.remove_worktree(self.repo_root, path)

    def delete_branch(self, branch: str) -> None:
        wt.delete_branch(self.repo_root, branch, force=True)


@dataclass
class RunSummary:
    slug: str
    completed: list[str] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"slug": self.slug, "completed": list(self.completed), "attempts": dict(self.attempts)}


def _crashed_result(stage: str, exc: BaseException) -> PipelineResult:
    return PipelineResult(
        passed=False,
        gates=[GateResult(gate=stage, passed=False, errors=[GateError(message=f"{stage} crashed: {exc}")])],
    )


class GraphRunner:
    def __init__(
        self,
        project_dir: Path,
        slug: str,
        config: ForgeConfig,
        *,
        store: GraphStore,
        agent: Agent,
        verifier: Verifier,
        worktrees: GitWorktrees,
        tracker: Optional[IssueSync] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.slug = slug
        self.config = config
        self.store = store
        self.agent = agent
        self.verifier = verifier
        self.worktrees = worktrees
        self.tracker = tracker or IssueSync.disabled()

    def run(self) -> RunSummary:
        summary = RunSummary(slug=self.slug)
        index = self.store.load_index()
        self.worktrees.ensure_branch(index.branch)
        logger.info("Running graph '{}' into branch {}", self.slug, index.branch)

        while not is_project_complete(index):
            ready = find_ready(index)
            if not ready:
                raise DeadlockError(find_blocked(index), find_in_progress(index), find_discovered(index))
            logger.info("Ready: {}", ", ".join(ready))
            for requirement_id in ready:
                index = self.store.load_index()
                meta = index.requirements.get(requirement_id)
                if meta is None or meta.status != RequirementStatus.PENDING:
                    logger.info("Skipping {}: no longer pending", requirement_id)
                    continue
                summary.attempts[requirement_id] = self._run_requirement(requirement_id)
                summary.completed.append(requirement_id)
            index = self.store.load_index()

        logger.info("Graph '{}' complete ({} requirement(s) this run)", self.slug, len(summary.completed))
        return summary

    def _load_overview(self) -> str:
        try:
            return self.store.load_overview()
        except FileNotFoundError:
            return ""

    def _run_requirement(self, requirement_id: str) -> int:
        requirement = self.store.load_requirement(requirement_id)
        if requirement is None:
            raise RunAborted(f"Requirement {requirement_id} has no content file")

        self.store.update_requirement_status(requirement_id, RequirementStatus.IN_PROGRESS)
        index = self.store.load_index()
        dep_ids = get_transitive_deps(index, requirement_id)[:-1]
        context = build_requirement_context(index, self.store.load_requirements(dep_ids), requirement_id)
        overview = self._load_overview()

        identifier = self.tracker.resolve_identifier(index, requirement_id)
        branch = wt.work_branch_name(index.branch, identifier or requirement_id)
        handle = self.worktrees.create(requirement_id, index.branch, branch)
        session_id: Optional[str] = None
        try:
            session_id = self.worktrees.register(handle, requirement_id)
            self.tracker.requirement_started(index, requirement_id, branch)
            logger.info("Requirement {} ({}) in {}", requirement_id, requirement.title, handle.path)
            attempts, result = self._attempt(requirement, index, overview, context, handle)
            if not result.passed:
                raise IterationBudgetExceeded(requirement_id, attempts, result)
            self.worktrees.mark_completing(session_id)
            self.worktrees.commit_pending(handle.path, f"{requirement_id}: {requirement.title}")
            self.worktrees.merge(handle.branch, index.branch)
        finally:
            self._cleanup(handle.path, session_id)

        self.worktrees.delete_branch(handle.branch)
        self.store.update_requirement_status(requirement_id, RequirementStatus.COMPLETE)
        self.tracker.requirement_completed(self.store.load_index(), requirement_id)
        logger.info("Requirement {} complete after {} attempt(s)", requirement_id, attempts)
        return attempts

    def _attempt(
        self,
        requirement: Requirement,
        index: GraphIndex,
        overview: str,
        context: list[dict[str, Any]],
        handle: wt.WorktreeHandle,
    ) -> tuple[int, PipelineResult]:
        last: Optional[PipelineResult] = None
        max_iterations = self.config.max_iterations
        for iteration in range(1, max_iterations + 1):
            logger.info("{} iteration {}/{}", requirement.id, iteration, max_iterations)
            prompt = build_requirement_prompt(requirement, overview, context, last)
            try:
                self.agent.run(prompt, handle.path)
            except Exception as exc:
                logger.error("Agent run failed for {}: {}", requirement.id, exc)
                last = _crashed_result("agent", exc)
                continue

            pipeline_input = PipelineInput.from_config(
                handle.path,
                self.config,
                requirement=requirement,
                base_branch=index.branch,
            )
            try:
                result = self.verifier(pipeline_input)
            except Exception as exc:
                logger.error("Verification crashed for {}: {}", requirement.id, exc)
                last = _crashed_result("pipeline", exc)
                continue

            self._cache_verdict(result, handle.branch)
            logger.info("Verification for {}: {}", requirement.id, summarize_pipeline(result))
            if result.passed:
                return iteration, result
            last = result
        assert last is not None
        return max_iterations, last

    def _cache_verdict(self, result: PipelineResult, branch: str) -> None:
        try:
            write_verify_cache(self.project_dir, result, branch)
        except OSError as exc:
            logger.warning("Could not write verify cache: {}", exc)

    def _cleanup(self, worktree_path: Path, session_id: Optional[str]) -> None:
        try:
            self.worktrees.remove(worktree_path)
        except Exception as exc:
            logger.warning("Failed to remove worktree {}: {}", worktree_path, exc)
        if session_id is None:
            return
        try:
            self.worktrees.deregister(session_id)
        except Exception as exc:
            logger.warning("Failed to deregister session {}: {}", session_id, exc)


def run_graph(project_dir: Path, slug: str, config: Optional[ForgeConfig] = None) -> RunSummary:
    """Validate the graph, then run it to completion with the real collaborators."""
    project_dir = Path(project_dir).resolve()
    if config is None:
        config, err = load_config(project_dir)
        if err:
            raise RunAborted(f"Invalid config: {err}")
    for gate in config.unknown_gates():
        logger.warning("Unknown gate '{}' configured; it fails every verification", gate)

    store = GraphStore(project_dir, slug)
    graph, issues = load_and_validate(store)
    fatal = [issue for issue in issues if issue.type not in NON_FATAL_ISSUES]
    for issue in issues:
        if issue.type in NON_FATAL_ISSUES:
            logger.warning("{}", issue.message)
    if graph is None or fatal:
        raise InvalidGraphError(fatal)

    worktrees = GitWorktrees(wt.get_repo_root(project_dir))
    stale = sessions.detect_stale_sessions(worktrees.repo_root)
    if stale:
        logger.warning(
            "{} stale session(s) found; run `forge-runner sessions --sweep` to clean them up", len(stale)
        )

    runner = GraphRunner(
        project_dir,
        slug,
        config,
        store=store,
        agent=AgentRunner(config.agent_command),
        verifier=run_pipeline,
        worktrees=worktrees,
        tracker=IssueSync.for_index(graph.index, linear_api_key(), config.linear_team),
    )
    return runner.run()
