"""Run verification gates in order and collect a single verdict."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from ..constants import CORE_GATES, STATE_DIR_NAME, VERIFY_CACHE_FILE
from ..io_utils import _atomic_write_yaml
from ..logging_utils import summarize_pipeline
from ..utils import _now_iso
from .base import GateContext, GateError, GateResult, PipelineInput, PipelineResult
from .command import verify_lint, verify_tests, verify_types
from .coverage import verify_coverage
from .live import verify_runtime, verify_visual

GateFn = Callable[[PipelineInput, GateContext], GateResult]

GATE_REGISTRY: dict[str, GateFn] = {
    "types": verify_types,
    "lint": verify_lint,
    "tests": verify_tests,
    "visual": verify_visual,
    "runtime": verify_runtime,
    "coverage": verify_coverage,
}

SKIPPED_WARNING = "Skipped due to core gate failures"


def _run_gate_safe(name: str, fn: GateFn, pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    start = time.monotonic()
    try:
        return fn(pipeline_input, context)
    except Exception as exc:
        logger.exception("Gate {} crashed", name)
        return GateResult(
            gate=name,
            passed=False,
            errors=[GateError(message=f"Gate crashed: {exc}")],
            duration_ms=int((time.monotonic() - start) * 1000),
        )


def _core_gates_all_failed(results: list[GateResult]) -> bool:
    core = [r for r in results if r.gate in CORE_GATES]
    return len(core) == len(CORE_GATES) and all(not r.passed for r in core)


def run_pipeline(
    pipeline_input: PipelineInput,
    registry: Optional[dict[str, GateFn]] = None,
) -> PipelineResult:
    """Run the requested gates in order.

    An unknown gate name or a gate that raises yields a failing result for that
    gate only. Once types, lint and tests have all failed, the remaining gates
    are recorded as skipped. Any dev server started along the way is stopped
    before returning, on every path.
    """
    gates = registry if registry is not None else GATE_REGISTRY
    context = GateContext(pipeline_input)
    results: list[GateResult] = []
    requested = list(pipeline_input.gates)

    try:
        for pos, name in enumerate(requested):
            fn = gates.get(name)
            if fn is None:
                results.append(GateResult(gate=name, passed=False, errors=[GateError(message=f"Unknown gate: {name}")]))
                continue
            result = _run_gate_safe(name, fn, pipeline_input, context)
            results.append(result)
            logger.info("Gate {}: {}", name, "passed" if result.passed else f"failed ({len(result.errors)} errors)")

            if _core_gates_all_failed(results):
                for remaining in requested[pos + 1:]:
                    results.append(GateResult(gate=remaining, passed=False, warnings=[SKIPPED_WARNING], skipped=True))
                break
    finally:
        try:
            context.close()
        except Exception as exc:
            logger.warning("Failed to tear down gate resources: {}", exc)

    result = PipelineResult(passed=bool(results) and all(r.passed for r in results), gates=results)
    logger.debug("Pipeline result: {}", summarize_pipeline(result))
    return result


def verify_cache_path(project_dir: Path) -> Path:
    return Path(project_dir) / STATE_DIR_NAME / VERIFY_CACHE_FILE


def write_verify_cache(project_dir: Path, result: PipelineResult, branch: Optional[str] = None) -> Path:
    """Persist the latest verdict so `status` and follow-up runs can read it."""
    path = verify_cache_path(project_dir)
    payload = {"timestamp": _now_iso(), "branch": branch, **result.to_dict()}
    _atomic_write_yaml(path, payload)
    return path
