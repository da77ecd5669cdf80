"""Tests for the graph runner, with in-memory collaborators and against a real repository."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from conftest import git, make_index, write_graph
from forge_runner.config import ForgeConfig
from forge_runner.errors import DeadlockError, InvalidGraphError, IterationBudgetExceeded
from forge_runner.gates import GateError, GateResult, PipelineInput, PipelineResult
from forge_runner.gates.pipeline import verify_cache_path
from forge_runner.graph import GraphStore, RequirementStatus
from forge_runner.orchestrator import GitWorktrees, GraphRunner, run_graph
from forge_runner.tracker import IssueSync
from forge_runner.worktree import MergeConflictError, WorktreeHandle, get_worktree_base_dir
from forge_runner.worktree.manager import current_branch
from forge_runner.worktree.session import load_registry

PASS = PipelineResult(passed=True, gates=[GateResult(gate="tests", passed=True)])
FAIL = PipelineResult(
    passed=False,
    gates=[GateResult(gate="tests", passed=False, errors=[GateError(message="FAILED tests/test_x.py::test_y")])],
)


class FakeWorktrees:
    def __init__(self, root: Path, merge_error: Optional[Exception] = None) -> None:
        self.root = root
        self.merge_error = merge_error
        self.calls: list[tuple[str, str]] = []
        self.sessions: set[str] = set()

    def ensure_branch(self, branch: str) -> None:
        self.calls.append(("ensure_branch", branch))

    def create(self, name: str, base_branch: str, branch: str) -> WorktreeHandle:
        path = self.root / name
        path.mkdir(parents=True)
        self.calls.append(("create", branch))
        return WorktreeHandle(path=path, branch=branch, session_id=f"s-{name}")

    def register(self, handle: WorktreeHandle, requirement_id: str) -> str:
        self.sessions.add(handle.session_id)
        self.calls.append(("register", requirement_id))
        return handle.session_id

    def mark_completing(self, session_id: str) -> None:
        self.calls.append(("completing", session_id))

    def deregister(self, session_id: str) -> None:
        self.sessions.discard(session_id)
        self.calls.append(("deregister", session_id))

    def commit_pending(self, path: Path, message: str) -> None:
        self.calls.append(("commit", message))

    def merge(self, branch: str, base_branch: str) -> None:
        self.calls.append(("merge", branch))
        if self.merge_error is not None:
            raise self.merge_error

    def remove(self, path: Path) -> None:
        self.calls.append(("remove", path.name))

    def delete_branch(self, branch: str) -> None:
        self.calls.append(("delete_branch", branch))

    def names(self, kind: str) -> list[str]:
        return [value for name, value in self.calls if name == kind]


class FakeAgent:
    def __init__(self, store: GraphStore, fail_first: int = 0) -> None:
        self.store = store
        self.fail_first = fail_first
        self.prompts: list[str] = []
        self.seen_status: list[tuple[str, str]] = []

    def run(self, prompt: str, cwd: Path) -> None:
        self.prompts.append(prompt)
        requirement_id = cwd.name
        self.seen_status.append((requirement_id, self.store.load_index().requirements[requirement_id].status.value))
        if len(self.prompts) <= self.fail_first:
            raise RuntimeError("agent binary missing")


def _verifier(results: Callable[[PipelineInput], PipelineResult]):
    inputs: list[PipelineInput] = []

    def verify(pipeline_input: PipelineInput) -> PipelineResult:
        inputs.append(pipeline_input)
        return results(pipeline_input)

    return verify, inputs


def _runner(tmp_path: Path, store: GraphStore, *, verifier, agent=None, worktrees=None, max_iterations: int = 3, tracker=None):
    agent = agent or FakeAgent(store)
    worktrees = worktrees or FakeWorktrees(tmp_path / "worktrees")
    runner = GraphRunner(
        tmp_path,
        store.slug,
        ForgeConfig(max_iterations=max_iterations),
        store=store,
        agent=agent,
        verifier=verifier,
        worktrees=worktrees,
        tracker=tracker,
    )
    return runner, agent, worktrees


def test_runs_dependencies_in_order_and_merges_each(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-002": {"dependsOn": ["REQ-001"]}, "REQ-001": {}}))
    verify, inputs = _verifier(lambda _input: PASS)
    runner, agent, worktrees = _runner(tmp_path, store, verifier=verify)

    summary = runner.run()

    assert summary.completed == ["REQ-001", "REQ-002"]
    assert summary.attempts == {"REQ-001": 1, "REQ-002": 1}
    assert agent.seen_status == [("REQ-001", "in_progress"), ("REQ-002", "in_progress")]
    assert worktrees.names("create") == ["feat/demo-wt/REQ-001", "feat/demo-wt/REQ-002"]
    assert worktrees.names("merge") == ["feat/demo-wt/REQ-001", "feat/demo-wt/REQ-002"]
    assert worktrees.names("remove") == ["REQ-001", "REQ-002"]
    assert worktrees.names("delete_branch") == ["feat/demo-wt/REQ-001", "feat/demo-wt/REQ-002"]
    assert worktrees.sessions == set()
    assert worktrees.calls[0] == ("ensure_branch", "feat/demo")

    index = store.load_index()
    assert all(meta.status == RequirementStatus.COMPLETE and meta.completed_at for meta in index.requirements.values())
    assert "### REQ-001" in agent.prompts[1]
    assert inputs[0].project_dir == tmp_path / "worktrees" / "REQ-001"
    assert inputs[0].base_branch == "feat/demo"
    assert inputs[1].requirement.id == "REQ-002"
    assert verify_cache_path(tmp_path).exists()


def test_merge_happens_before_remove(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-001": {}}))
    verify, _inputs = _verifier(lambda _input: PASS)
    runner, _agent, worktrees = _runner(tmp_path, store, verifier=verify)
    runner.run()

    kinds = [name for name, _ in worktrees.calls]
    assert kinds == [
        "ensure_branch",
        "create",
        "register",
        "completing",
        "commit",
        "merge",
        "remove",
        "deregister",
        "delete_branch",
    ]


def test_budget_exhaustion_leaves_requirement_in_progress(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-001": {}}))
    verify, inputs = _verifier(lambda _input: FAIL)
    runner, agent, worktrees = _runner(tmp_path, store, verifier=verify, max_iterations=3)

    with pytest.raises(IterationBudgetExceeded) as excinfo:
        runner.run()

    assert excinfo.value.attempts == 3
    assert excinfo.value.last_result is FAIL
    assert len(agent.prompts) == 3
    assert len(inputs) == 3
    assert "First iteration" in agent.prompts[0]
    assert 'Gate "tests" FAILED' in agent.prompts[1]
    assert worktrees.names("merge") == []
    assert worktrees.names("remove") == ["REQ-001"]
    assert worktrees.sessions == set()
    assert store.load_index().requirements["REQ-001"].status == RequirementStatus.IN_PROGRESS


def test_agent_crash_counts_as_failed_attempt(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-001": {}}))
    agent = FakeAgent(store, fail_first=1)
    verify, inputs = _verifier(lambda _input: PASS)
    runner, _agent, _worktrees = _runner(tmp_path, store, verifier=verify, agent=agent)

    summary = runner.run()
    assert summary.attempts == {"REQ-001": 2}
    assert len(inputs) == 1
    assert "agent crashed: agent binary missing" in agent.prompts[1]


def test_verifier_crash_counts_as_failed_attempt(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-001": {}}))
    outcomes = iter([RuntimeError("pipeline exploded"), PASS])

    def flaky(_input: PipelineInput) -> PipelineResult:
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    runner, agent, _worktrees = _runner(tmp_path, store, verifier=flaky)
    assert runner.run().attempts == {"REQ-001": 2}
    assert "pipeline crashed: pipeline exploded" in agent.prompts[1]


def test_merge_conflict_aborts_and_cleans_up(tmp_path: Path) -> None:
    store = write_graph(tmp_path, make_index({"REQ-001": {}, "REQ-002": {}}))
    worktrees = FakeWorktrees(tmp_path / "worktrees", merge_error=MergeConflictError("feat/demo-wt/REQ-001", "feat/demo"))
    verify, _inputs = _verifier(lambda _input: PASS)
    runner, agent, _ = _runner(tmp_path, store, verifier=verify, worktrees=worktrees)

    with pytest.raises(MergeConflictError):
        runner.run()

    assert worktrees.names("remove") == ["REQ-001"]
    assert worktrees.names("delete_branch") == []
    assert worktrees.sessions == set()
    assert len(agent.prompts) == 1
    index = store.load_index()
    assert index.requirements["REQ-001"].status == RequirementStatus.IN_PROGRESS
    assert index.requirements["REQ-002"].status == RequirementStatus.PENDING


def test_deadlock_reports_what_is_stuck(tmp_path: Path) -> None:
    store = write_graph(
        tmp_path,
        make_index(
            {
                "REQ-001": {"status": "in_progress"},
                "REQ-002": {"dependsOn": ["REQ-001"]},
                "REQ-003": {"status": "discovered"},
            }
        ),
    )
    verify, inputs = _verifier(lambda _input: PASS)
    runner, agent, _worktrees = _runner(tmp_path, store, verifier=verify)

    with pytest.raises(DeadlockError) as excinfo:
        runner.run()
    assert excinfo.value.in_progress == ["REQ-001"]
    assert excinfo.value.discovered == ["REQ-003"]
    assert excinfo.value.blocked == [{"id": "REQ-002", "blocked_by": ["REQ-001"]}]
    assert agent.prompts == []


def test_complete_graph_is_a_no_op(tmp_path: Path) -> None:
    done = {"status": "complete", "completedAt": "2026-01-02T00:00:00+00:00"}
    store = write_graph(tmp_path, make_index({"REQ-001": done, "REQ-002": {"status": "rejected"}}))
    verify, inputs = _verifier(lambda _input: PASS)
    runner, agent, worktrees = _runner(tmp_path, store, verifier=verify)

    assert runner.run().completed == []
    assert agent.prompts == []
    assert worktrees.names("create") == []


def test_linked_issue_identifier_names_the_branch(tmp_path: Path) -> None:
    index = make_index({"REQ-001": {"linearIssueId": "issue-1"}})
    store = write_graph(tmp_path, index)

    class Client:
        def issue_identifier(self, issue_id: str) -> str:
            return "ENG-7"

        def set_issue_state(self, issue_id: str, team_id: str, state_name: str) -> None:
            pass

        def comment(self, issue_id: str, body: str) -> None:
            pass

    verify, _inputs = _verifier(lambda _input: PASS)
    tracker = IssueSync(Client(), "team-1")  # type: ignore[arg-type]
    runner, _agent, worktrees = _runner(tmp_path, store, verifier=verify, tracker=tracker)
    runner.run()
    assert worktrees.names("create") == ["feat/demo-wt/ENG-7"]


def test_run_graph_refuses_invalid_graph(tmp_path: Path) -> None:
    write_graph(tmp_path, make_index({"A": {"dependsOn": ["B"]}, "B": {"dependsOn": ["A"]}}))
    with pytest.raises(InvalidGraphError) as excinfo:
        run_graph(tmp_path, "demo", ForgeConfig())
    assert [issue.type for issue in excinfo.value.issues] == ["cycle"]


def test_run_graph_warns_about_unknown_gates(tmp_path: Path, log_messages: list[str]) -> None:
    write_graph(tmp_path, make_index({"A": {"dependsOn": ["B"]}, "B": {"dependsOn": ["A"]}}))
    with pytest.raises(InvalidGraphError):
        run_graph(tmp_path, "demo", ForgeConfig(gates=["tests", "smoke"]))
    assert "Unknown gate 'smoke' configured; it fails every verification" in log_messages


def test_real_worktrees_merge_each_requirement_into_base(repo: Path) -> None:
    store = write_graph(repo, make_index({"REQ-001": {}, "REQ-002": {"dependsOn": ["REQ-001"]}}))
    worktrees = GitWorktrees(repo)
    leftover = get_worktree_base_dir(repo) / "REQ-001"
    leftover.mkdir(parents=True)
    (leftover / "junk.txt").write_text("from a crashed run\n")

    class FileWritingAgent:
        def __init__(self) -> None:
            self.sessions_seen: list[list[str]] = []

        def run(self, prompt: str, cwd: Path) -> None:
            self.sessions_seen.append([s.requirement for s in load_registry(repo)])
            assert not (cwd / "junk.txt").exists()
            (cwd / f"{cwd.name}.txt").write_text(f"{cwd.name} done\n")

    agent = FileWritingAgent()
    verify, _inputs = _verifier(lambda _input: PASS)
    runner, _agent, _ = _runner(repo, store, verifier=verify, agent=agent, worktrees=worktrees)

    summary = runner.run()

    assert summary.completed == ["REQ-001", "REQ-002"]
    assert agent.sessions_seen == [["REQ-001"], ["REQ-002"]]
    assert git(repo, "show", "feat/demo:REQ-001.txt") == "REQ-001 done"
    assert git(repo, "show", "feat/demo:REQ-002.txt") == "REQ-002 done"
    assert git(repo, "branch", "--list", "feat/demo-wt/*") == ""
    assert current_branch(repo) == "main"
    assert load_registry(repo) == []
    assert not leftover.exists()
