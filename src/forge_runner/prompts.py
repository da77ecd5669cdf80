"""Build the text prompt handed to the coding agent for one requirement attempt."""

from __future__ import annotations

from typing import Any, Optional

from .gates.base import PipelineResult
from .graph.models import Requirement

FIRST_ITERATION = "First iteration: start from scratch."


def format_verify_errors(result: PipelineResult) -> str:
    lines = [f"Verification: {'PASSED' if result.passed else 'FAILED'}"]
    for gate in result.gates:
        if gate.passed or gate.skipped:
            continue
        lines.append(f'\nGate "{gate.gate}" FAILED:')
        for err in gate.errors:
            loc = err.location()
            if loc and err.column is not None:
                loc = f"{loc}:{err.column}"
            rule = f" [{err.rule}]" if err.rule else ""
            lines.append(f"  {loc + ': ' if loc else ''}{err.message}{rule}")
    skipped = [gate.gate for gate in result.gates if gate.skipped]
    if skipped:
        lines.append(f"\nSkipped after core gate failures: {', '.join(skipped)}")
    return "\n".join(lines)


def _format_dependency(dep: dict[str, Any]) -> str:
    files = dep.get("files") or {}
    creates = ", ".join(files.get("creates") or []) or "none"
    modifies = ", ".join(files.get("modifies") or []) or "none"
    acceptance = "\n".join(f"- {item}" for item in dep.get("acceptance") or [])
    body = str(dep.get("body") or "").strip()
    return (
        f"### {dep['id']}: {dep['title']} ({dep.get('status', 'unknown')})\n"
        f"{body}\n\n"
        f"Acceptance:\n{acceptance}\n"
        f"Files: creates {creates}; modifies {modifies}"
    )


def build_requirement_prompt(
    requirement: Requirement,
    overview: str,
    dep_context: list[dict[str, Any]],
    verify_errors: Optional[PipelineResult] = None,
) -> str:
    """Assemble the agent prompt from already-loaded graph content.

    `dep_context` is the output of `build_requirement_context`. Pass the last
    failing pipeline result as `verify_errors` on retries.
    """
    if verify_errors is not None and not verify_errors.passed:
        current_state = format_verify_errors(verify_errors)
    else:
        current_state = FIRST_ITERATION

    deps_section = ""
    if dep_context:
        deps_section = "## Completed Dependencies\n\n" + "\n\n".join(_format_dependency(d) for d in dep_context) + "\n\n"

    creates = ", ".join(requirement.files.creates) or "none"
    modifies = ", ".join(requirement.files.modifies) or "none"
    acceptance = "\n".join(f"- {item}" for item in requirement.acceptance)

    return f"""# Task: Complete Requirement {requirement.id}: {requirement.title}

## Project Overview
{overview.strip() or "(no overview)"}

{deps_section}## Your Requirement
{requirement.body.strip()}

### Acceptance Criteria
{acceptance}

### File Scope
**Creates:** {creates}
**Modifies:** {modifies}

## Current State
{current_state}

## Rules
- Run the project's type checker, linter and tests before finishing. All must pass.
- Commit your work before exiting.
- Do NOT write tests just to make checks pass. Fix real issues only.
- Stay within the declared file scope when possible.
"""
