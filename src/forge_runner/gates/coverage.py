"""Heuristic check that a change plausibly addresses every acceptance statement.

Each statement is reduced to its significant words. A statement counts as
covered when at least half of those words appear somewhere in the diff
against the base branch (including untracked files).
"""

from __future__ import annotations

import re
import subprocess
import time
from pathlib import Path

from .base import GateContext, GateError, GateResult, PipelineInput

COVERAGE_THRESHOLD = 0.5
MIN_WORD_LENGTH = 4

_WORD_RE = re.compile(r"[a-z][a-z0-9_]+")
_STOPWORDS = frozenset(
    {
        "also", "been", "being", "both", "each", "from", "have", "into", "must",
        "only", "other", "same", "shall", "should", "some", "such", "than", "that",
        "their", "them", "then", "there", "these", "they", "this", "those", "when",
        "where", "which", "while", "will", "with", "within", "without", "would",
        "returns", "return", "given", "user", "users",
    }
)


def keywords(statement: str) -> list[str]:
    seen: list[str] = []
    for word in _WORD_RE.findall(statement.lower()):
        if len(word) < MIN_WORD_LENGTH or word in _STOPWORDS or word in seen:
            continue
        seen.append(word)
    return seen


def statement_covered(statement: str, haystack: str) -> bool:
    words = keywords(statement)
    if not words:
        return True
    hits = sum(1 for word in words if word in haystack)
    return hits / len(words) >= COVERAGE_THRESHOLD


def _git_output(args: list[str], cwd: Path) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise RuntimeError(f"git {args[0]} failed: {result.stderr.strip()}")
    return result.stdout


def collect_changes(project_dir: Path, base_branch: str) -> str:
    """Diff of the working tree against `base_branch` plus untracked file contents."""
    parts = [_git_output(["diff", base_branch], project_dir)]
    for name in _git_output(["ls-files", "--others", "--exclude-standard"], project_dir).splitlines():
        path = project_dir / name
        try:
            parts.append(f"+++ {name}\n{path.read_text(encoding='utf-8', errors='replace')}")
        except OSError:
            continue
    return "\n".join(parts)


def verify_coverage(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    start = time.monotonic()
    req = pipeline_input.requirement
    if req is None:
        return GateResult(gate="coverage", passed=True, warnings=["No requirement to check coverage against"])
    if not pipeline_input.base_branch:
        return GateResult(gate="coverage", passed=True, warnings=["No base branch to diff against"])

    changes = collect_changes(Path(pipeline_input.project_dir), pipeline_input.base_branch)
    duration_ms = int((time.monotonic() - start) * 1000)
    if not changes.strip():
        return GateResult(
            gate="coverage",
            passed=False,
            errors=[GateError(message=f"No changes against {pipeline_input.base_branch}")],
            duration_ms=duration_ms,
        )

    haystack = changes.lower()
    errors = [
        GateError(message=f"Acceptance statement not reflected in the change: {statement}", rule=req.id)
        for statement in req.acceptance
        if not statement_covered(statement, haystack)
    ]
    return GateResult(gate="coverage", passed=not errors, errors=errors, duration_ms=duration_ms)
