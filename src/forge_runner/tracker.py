"""Best-effort issue tracker sync with Linear.

Nothing here may change the outcome of a run: every call made through
`IssueSync` is wrapped by `sync_safe`, which logs failures and moves on.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Callable, Optional, TypeVar

from loguru import logger

from .constants import LINEAR_API_URL, LINEAR_STATE_DONE, LINEAR_STATE_STARTED
from .graph.models import GraphIndex

T = TypeVar("T")

REQUEST_TIMEOUT_SECONDS = 15


class TrackerError(RuntimeError):
    pass


def sync_safe(description: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Call `fn`, returning None instead of raising if anything goes wrong."""
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        logger.warning("Issue tracker sync failed ({}): {}", description, exc)
        return None


class LinearClient:
    """Minimal Linear GraphQL client."""

    def __init__(self, api_key: str, url: str = LINEAR_API_URL) -> None:
        self.api_key = api_key
        self.url = url
        self._state_cache: dict[str, dict[str, str]] = {}

    def _graphql(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        request = urllib.request.Request(
            self.url,
            data=json.dumps({"query": query, "variables": variables or {}}).encode("utf-8"),
            headers={"Content-Type": "application/json", "Authorization": self.api_key},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise TrackerError(f"Linear HTTP error: {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise TrackerError(f"Linear URL error: {exc.reason}") from exc
        if payload.get("errors"):
            messages = "; ".join(str(e.get("message")) for e in payload["errors"])
            raise TrackerError(f"Linear API error: {messages}")
        return payload.get("data") or {}

    def issue_identifier(self, issue_id: str) -> str:
        data = self._graphql("query($id: String!) { issue(id: $id) { identifier } }", {"id": issue_id})
        issue = data.get("issue") or {}
        if not issue.get("identifier"):
            raise TrackerError(f"Issue {issue_id} not found")
        return str(issue["identifier"])

    def workflow_states(self, team_id: str) -> dict[str, str]:
        if team_id not in self._state_cache:
            data = self._graphql(
                "query($id: String!) { team(id: $id) { states { nodes { id name } } } }",
                {"id": team_id},
            )
            nodes = ((data.get("team") or {}).get("states") or {}).get("nodes") or []
            self._state_cache[team_id] = {str(n["name"]).lower(): str(n["id"]) for n in nodes}
        return self._state_cache[team_id]

    def set_issue_state(self, issue_id: str, team_id: str, state_name: str) -> None:
        state_id = self.workflow_states(team_id).get(state_name.lower())
        if state_id is None:
            raise TrackerError(f'Workflow state "{state_name}" not found for team {team_id}')
        data = self._graphql(
            "mutation($id: String!, $stateId: String!) { issueUpdate(id: $id, input: {stateId: $stateId}) { success } }",
            {"id": issue_id, "stateId": state_id},
        )
        if not (data.get("issueUpdate") or {}).get("success"):
            raise TrackerError(f"Failed to move issue {issue_id} to {state_name}")

    def comment(self, issue_id: str, body: str) -> None:
        data = self._graphql(
            "mutation($issueId: String!, $body: String!) { commentCreate(input: {issueId: $issueId, body: $body}) { success } }",
            {"issueId": issue_id, "body": body},
        )
        if not (data.get("commentCreate") or {}).get("success"):
            raise TrackerError(f"Failed to comment on issue {issue_id}")


class IssueSync:
    """Mirror requirement progress onto linked tracker issues."""

    def __init__(self, client: Optional[LinearClient], team_id: Optional[str] = None) -> None:
        self.client = client
        self.team_id = team_id

    @classmethod
    def disabled(cls) -> "IssueSync":
        return cls(None)

    @classmethod
    def for_index(cls, index: GraphIndex, api_key: Optional[str], team_override: Optional[str] = None) -> "IssueSync":
        team_id = team_override or (index.linear.team_id if index.linear else None)
        if not api_key or not team_id:
            return cls.disabled()
        return cls(LinearClient(api_key), team_id)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _issue_id(self, index: GraphIndex, requirement_id: str) -> Optional[str]:
        meta = index.requirements.get(requirement_id)
        return meta.linear_issue_id if meta else None

    def resolve_identifier(self, index: GraphIndex, requirement_id: str) -> Optional[str]:
        """Human identifier (e.g. `ENG-42`) of the linked issue, or None."""
        issue_id = self._issue_id(index, requirement_id)
        if self.client is None or not issue_id:
            return None
        return sync_safe(f"identifier {requirement_id}", self.client.issue_identifier, issue_id)

    def requirement_started(self, index: GraphIndex, requirement_id: str, branch: Optional[str] = None) -> None:
        issue_id = self._issue_id(index, requirement_id)
        if self.client is None or not issue_id or not self.team_id:
            return
        sync_safe(f"start {requirement_id}", self.client.set_issue_state, issue_id, self.team_id, LINEAR_STATE_STARTED)
        if branch:
            sync_safe(f"branch {requirement_id}", self.client.comment, issue_id, f"Work started on branch `{branch}`.")

    def requirement_completed(self, index: GraphIndex, requirement_id: str) -> None:
        issue_id = self._issue_id(index, requirement_id)
        if self.client is None or not issue_id or not self.team_id:
            return
        sync_safe(f"complete {requirement_id}", self.client.set_issue_state, issue_id, self.team_id, LINEAR_STATE_DONE)
