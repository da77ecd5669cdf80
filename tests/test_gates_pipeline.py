"""Tests for the verification gate pipeline."""

from __future__ import annotations

from pathlib import Path

import pytest

from forge_runner.gates import GateContext, GateResult, PipelineInput, parse_diagnostics, run_pipeline, write_verify_cache
from forge_runner.gates.command import run_command_gate
from forge_runner.gates.pipeline import SKIPPED_WARNING, verify_cache_path
from forge_runner.io_utils import _load_data


def _passing(name: str):
    def gate(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
        return GateResult(gate=name, passed=True)

    return gate


def _failing(name: str):
    def gate(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
        return GateResult(gate=name, passed=False)

    return gate


def test_all_gates_pass(tmp_path: Path) -> None:
    registry = {name: _passing(name) for name in ("types", "lint", "tests")}
    result = run_pipeline(PipelineInput(tmp_path), registry)
    assert result.passed
    assert [g.gate for g in result.gates] == ["types", "lint", "tests"]


def test_unknown_gate_fails_only_itself(tmp_path: Path) -> None:
    registry = {"types": _passing("types")}
    result = run_pipeline(PipelineInput(tmp_path, gates=["types", "smoke"]), registry)
    assert not result.passed
    assert result.gate("types").passed
    smoke = result.gate("smoke")
    assert not smoke.passed
    assert smoke.errors[0].message == "Unknown gate: smoke"


def test_crashing_gate_is_isolated(tmp_path: Path) -> None:
    def explode(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
        raise RuntimeError("tool missing")

    registry = {"types": explode, "lint": _passing("lint"), "tests": _passing("tests")}
    result = run_pipeline(PipelineInput(tmp_path), registry)
    assert not result.passed
    assert result.gate("types").errors[0].message == "Gate crashed: tool missing"
    assert result.gate("lint").passed
    assert result.gate("tests").passed


def test_core_failures_skip_remaining_gates(tmp_path: Path) -> None:
    called: list[str] = []

    def tracked(name: str):
        def gate(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
            called.append(name)
            return GateResult(gate=name, passed=True)

        return gate

    registry = {
        "types": _failing("types"),
        "lint": _failing("lint"),
        "tests": _failing("tests"),
        "visual": tracked("visual"),
        "coverage": tracked("coverage"),
    }
    pipeline_input = PipelineInput(tmp_path, gates=["types", "lint", "tests", "visual", "coverage"])
    result = run_pipeline(pipeline_input, registry)

    assert called == []
    skipped = [g for g in result.gates if g.skipped]
    assert [g.gate for g in skipped] == ["visual", "coverage"]
    assert all(not g.passed and g.warnings == [SKIPPED_WARNING] for g in skipped)
    assert [g.gate for g in result.failed_gates()] == ["types", "lint", "tests"]


def test_one_core_failure_does_not_skip(tmp_path: Path) -> None:
    registry = {
        "types": _failing("types"),
        "lint": _passing("lint"),
        "tests": _passing("tests"),
        "visual": _passing("visual"),
    }
    result = run_pipeline(PipelineInput(tmp_path, gates=["types", "lint", "tests", "visual"]), registry)
    assert result.gate("visual").passed
    assert not result.gate("visual").skipped


def test_context_is_closed_even_when_a_gate_crashes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[bool] = []
    monkeypatch.setattr(GateContext, "close", lambda self: closed.append(True))

    def explode(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
        raise RuntimeError("boom")

    run_pipeline(PipelineInput(tmp_path, gates=["types"]), {"types": explode})
    assert closed == [True]


def test_parse_diagnostics_handles_mypy_and_ruff_styles() -> None:
    output = "\n".join(
        [
            "app/models.py:12: error: Incompatible return value type  [return-value]",
            "app/models.py:13: note: Revealed type is int",
            "app/views.py:4:1: F401 [*] `os` imported but unused",
            "app/views.py:9:5: warning: deprecated call",
            "Found 2 errors in 2 files",
        ]
    )
    errors, warnings = parse_diagnostics(output)
    assert [(e.file, e.line, e.column, e.rule) for e in errors] == [
        ("app/models.py", 12, None, "return-value"),
        ("app/views.py", 4, 1, "F401"),
    ]
    assert warnings == ["app/views.py:9:5: warning: deprecated call"]


def test_command_gate_reports_diagnostics_on_failure(tmp_path: Path) -> None:
    pipeline_input = PipelineInput(
        tmp_path,
        commands={"lint": "echo 'src/a.py:3:7: E501 line too long' && exit 1"},
    )
    result = run_command_gate("lint", pipeline_input)
    assert not result.passed
    assert result.errors[0].file == "src/a.py"
    assert result.errors[0].rule == "E501"


def test_command_gate_clean_exit_passes(tmp_path: Path) -> None:
    result = run_command_gate("types", PipelineInput(tmp_path, commands={"types": "echo ok"}))
    assert result.passed
    assert result.errors == []


def test_command_gate_without_diagnostics_uses_output_tail(tmp_path: Path) -> None:
    result = run_command_gate("tests", PipelineInput(tmp_path, commands={"tests": "echo 'it broke' && exit 2"}))
    assert not result.passed
    assert "exited with status 2" in result.errors[0].message
    assert "it broke" in result.errors[0].message


def test_command_gate_timeout(tmp_path: Path) -> None:
    pipeline_input = PipelineInput(tmp_path, commands={"tests": "sleep 5"}, gate_timeouts={"tests": 1})
    result = run_command_gate("tests", pipeline_input)
    assert not result.passed
    assert "timed out" in result.errors[0].message


def test_verify_cache_is_written(tmp_path: Path) -> None:
    result = run_pipeline(PipelineInput(tmp_path, gates=["types"]), {"types": _passing("types")})
    path = write_verify_cache(tmp_path, result, "feat/demo")
    assert path == verify_cache_path(tmp_path)
    data = _load_data(path, {})
    assert data["passed"] is True
    assert data["branch"] == "feat/demo"
    assert data["gates"][0]["gate"] == "types"
