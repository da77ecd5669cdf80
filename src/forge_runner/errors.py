"""Fatal run outcomes. The CLI maps every `RunAborted` to exit status 1."""

from __future__ import annotations

from typing import Any, Optional


class RunAborted(Exception):
    """The run stopped before the graph was complete."""


class DeadlockError(RunAborted):
    """Nothing is ready to run, yet the graph is not complete."""

    def __init__(self, blocked: list[dict[str, Any]], in_progress: list[str], discovered: list[str]) -> None:
        self.blocked = blocked
        self.in_progress = in_progress
        self.discovered = discovered
        parts = []
        if blocked:
            parts.append("blocked: " + ", ".join(f"{b['id']} (waiting on {', '.join(b['blocked_by'])})" for b in blocked))
        if in_progress:
            parts.append("in progress: " + ", ".join(in_progress))
        if discovered:
            parts.append("discovered, awaiting triage: " + ", ".join(discovered))
        super().__init__("No requirements are ready but the graph is not complete" + (f"; {'; '.join(parts)}" if parts else ""))


class IterationBudgetExceeded(RunAborted):
    """A requirement kept failing verification for every allowed attempt."""

    def __init__(self, requirement_id: str, attempts: int, last_result: Optional[Any] = None) -> None:
        self.requirement_id = requirement_id
        self.attempts = attempts
        self.last_result = last_result
        super().__init__(f"Requirement {requirement_id} failed verification after {attempts} attempt(s)")


class InvalidGraphError(RunAborted):
    def __init__(self, issues: list[Any]) -> None:
        self.issues = issues
        super().__init__("Graph failed validation: " + "; ".join(issue.message for issue in issues))
