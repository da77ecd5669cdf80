"""Verification gates and the pipeline that runs them."""

from __future__ import annotations

from .base import GateContext, GateError, GateResult, PipelineInput, PipelineResult, parse_diagnostics
from .devserver import DevServer, DevServerError
from .pipeline import GATE_REGISTRY, run_pipeline, write_verify_cache

__all__ = [
    "DevServer",
    "DevServerError",
    "GATE_REGISTRY",
    "GateContext",
    "GateError",
    "GateResult",
    "PipelineInput",
    "PipelineResult",
    "parse_diagnostics",
    "run_pipeline",
    "write_verify_cache",
]
