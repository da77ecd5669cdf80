"""Gates that shell out to a project tool: type checker, linter, test runner."""

from __future__ import annotations

import time

from loguru import logger

from ..logging_utils import summarize_pytest_failures, truncate
from ..process import run_process
from .base import GateContext, GateError, GateResult, PipelineInput, parse_diagnostics


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def run_command_gate(name: str, pipeline_input: PipelineInput) -> GateResult:
    command = pipeline_input.commands.get(name)
    if not command:
        return GateResult(gate=name, passed=False, errors=[GateError(message=f"No command configured for gate {name}")])

    timeout = pipeline_input.timeout_for(name)
    start = time.monotonic()
    logger.debug("Running {} gate: {}", name, command)
    proc = run_process(command, pipeline_input.project_dir, timeout=timeout, shell=True)
    duration_ms = int((time.monotonic() - start) * 1000)

    if proc.timed_out:
        return GateResult(
            gate=name,
            passed=False,
            errors=[GateError(message=f"{command} timed out after {timeout}s")],
            duration_ms=duration_ms,
        )

    if name == "tests":
        errors, warnings = _test_failures(proc.output) if proc.exit_code != 0 else ([], [])
    else:
        errors, warnings = parse_diagnostics(proc.output)

    if proc.exit_code == 0:
        # A clean exit wins over anything that looked like a diagnostic.
        return GateResult(gate=name, passed=True, warnings=warnings, duration_ms=duration_ms)

    if not errors:
        detail = _tail(proc.output) or "no output"
        errors = [GateError(message=f"{command} exited with status {proc.exit_code}: {detail}")]
    return GateResult(gate=name, passed=False, errors=errors, warnings=warnings, duration_ms=duration_ms)


def _test_failures(output: str) -> tuple[list[GateError], list[str]]:
    summary = summarize_pytest_failures(output, max_failed=20)
    failed = list(summary["failed"])  # type: ignore[arg-type]
    first_error = summary["first_error"]
    errors: list[GateError] = []
    for nodeid in failed:
        path = nodeid.split("::", 1)[0]
        errors.append(GateError(message=f"FAILED {nodeid}", file=path))
    if errors and first_error:
        errors[0].message = f"{errors[0].message}: {truncate(str(first_error))}"
    return errors, []


def verify_types(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    return run_command_gate("types", pipeline_input)


def verify_lint(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    return run_command_gate("lint", pipeline_input)


def verify_tests(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    return run_command_gate("tests", pipeline_input)
