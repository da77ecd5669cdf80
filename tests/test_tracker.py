"""Tests for best-effort issue tracker sync."""

from __future__ import annotations

from typing import Any

import pytest

from conftest import make_index
from forge_runner.graph import GraphIndex
from forge_runner.tracker import IssueSync, LinearClient, TrackerError, sync_safe


def _linked_index() -> GraphIndex:
    index = make_index({"REQ-001": {"linearIssueId": "issue-1"}, "REQ-002": {}})
    data = index.to_dict()
    data["linear"] = {"projectId": "proj-1", "teamId": "team-1"}
    return GraphIndex.model_validate(data)


class FakeClient:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, Any]] = []

    def issue_identifier(self, issue_id: str) -> str:
        self.calls.append(("identifier", issue_id))
        if self.fail:
            raise TrackerError("offline")
        return "ENG-42"

    def set_issue_state(self, issue_id: str, team_id: str, state_name: str) -> None:
        self.calls.append(("state", (issue_id, team_id, state_name)))
        if self.fail:
            raise TrackerError("offline")

    def comment(self, issue_id: str, body: str) -> None:
        self.calls.append(("comment", issue_id))
        if self.fail:
            raise TrackerError("offline")


def test_sync_safe_swallows_failures() -> None:
    def broken() -> None:
        raise RuntimeError("network down")

    assert sync_safe("broken", broken) is None
    assert sync_safe("works", lambda x: x * 2, 21) == 42


def test_disabled_sync_is_a_no_op() -> None:
    sync = IssueSync.for_index(_linked_index(), api_key=None)
    assert not sync.enabled
    assert sync.resolve_identifier(_linked_index(), "REQ-001") is None
    sync.requirement_started(_linked_index(), "REQ-001", "feat/demo-wt/REQ-001")
    sync.requirement_completed(_linked_index(), "REQ-001")


def test_for_index_requires_a_team() -> None:
    assert not IssueSync.for_index(make_index({"REQ-001": {}}), api_key="key").enabled
    assert IssueSync.for_index(make_index({"REQ-001": {}}), api_key="key", team_override="team-9").enabled
    enabled = IssueSync.for_index(_linked_index(), api_key="key")
    assert enabled.team_id == "team-1"
    assert isinstance(enabled.client, LinearClient)


def test_progress_is_mirrored_to_linked_issue() -> None:
    client = FakeClient()
    sync = IssueSync(client, "team-1")  # type: ignore[arg-type]
    index = _linked_index()

    assert sync.resolve_identifier(index, "REQ-001") == "ENG-42"
    sync.requirement_started(index, "REQ-001", "feat/demo-wt/ENG-42")
    sync.requirement_completed(index, "REQ-001")
    assert client.calls == [
        ("identifier", "issue-1"),
        ("state", ("issue-1", "team-1", "In Progress")),
        ("comment", "issue-1"),
        ("state", ("issue-1", "team-1", "Done")),
    ]

    sync.requirement_started(index, "REQ-002", "feat/demo-wt/REQ-002")
    assert sync.resolve_identifier(index, "REQ-002") is None
    assert len(client.calls) == 4


def test_tracker_failures_never_raise() -> None:
    client = FakeClient(fail=True)
    sync = IssueSync(client, "team-1")  # type: ignore[arg-type]
    index = _linked_index()

    assert sync.resolve_identifier(index, "REQ-001") is None
    sync.requirement_started(index, "REQ-001", "b")
    sync.requirement_completed(index, "REQ-001")
    assert [name for name, _ in client.calls] == ["identifier", "state", "comment", "state"]


def test_linear_client_surfaces_graphql_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    client = LinearClient("key", url="http://127.0.0.1:9/graphql")

    def fake_graphql(query: str, variables: Any = None) -> dict[str, Any]:
        return {"team": {"states": {"nodes": [{"id": "s1", "name": "In Progress"}]}}}

    monkeypatch.setattr(client, "_graphql", fake_graphql)
    assert client.workflow_states("team-1") == {"in progress": "s1"}
    with pytest.raises(TrackerError, match="Done"):
        client.set_issue_state("issue-1", "team-1", "Done")
