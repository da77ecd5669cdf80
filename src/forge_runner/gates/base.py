"""Result types shared by every verification gate."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..config import DevServerConfig, ForgeConfig
from ..constants import DEFAULT_GATE_COMMANDS, DEFAULT_GATE_TIMEOUT_SECONDS, DEFAULT_GATES
from ..graph.models import Requirement
from .devserver import DevServer, DevServerError

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>[^\s:][^:]*):(?P<line>\d+):(?:(?P<column>\d+):)?\s*(?P<message>.+)$"
)
_TRAILING_RULE_RE = re.compile(r"\[(?P<rule>[\w.-]+)\]\s*$")
_LEADING_RULE_RE = re.compile(r"^(?:error:\s*)?(?P<rule>[A-Z]{1,4}\d{2,4})\b")


@dataclass
class GateError:
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    rule: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.message}
        for key in ("file", "line", "column", "rule"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def location(self) -> str:
        if not self.file:
            return ""
        if self.line is None:
            return self.file
        return f"{self.file}:{self.line}"


@dataclass
class GateResult:
    gate: str
    passed: bool
    errors: list[GateError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "gate": self.gate,
            "passed": self.passed,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "duration": self.duration_ms,
        }
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class PipelineResult:
    passed: bool
    gates: list[GateResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "gates": [g.to_dict() for g in self.gates]}

    def failed_gates(self) -> list[GateResult]:
        return [g for g in self.gates if not g.passed and not g.skipped]

    def gate(self, name: str) -> Optional[GateResult]:
        for result in self.gates:
            if result.gate == name:
                return result
        return None


@dataclass
class PipelineInput:
    project_dir: Path
    gates: list[str] = field(default_factory=lambda: list(DEFAULT_GATES))
    commands: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_GATE_COMMANDS))
    gate_timeouts: dict[str, int] = field(default_factory=dict)
    dev_server: Optional[DevServerConfig] = None
    pages: list[str] = field(default_factory=list)
    api_endpoints: list[str] = field(default_factory=list)
    requirement: Optional[Requirement] = None
    base_branch: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        project_dir: Path,
        config: ForgeConfig,
        *,
        requirement: Optional[Requirement] = None,
        base_branch: Optional[str] = None,
    ) -> "PipelineInput":
        return cls(
            project_dir=Path(project_dir),
            gates=list(config.gates),
            commands=dict(config.commands),
            gate_timeouts=dict(config.gate_timeouts),
            dev_server=config.dev_server,
            pages=list(config.pages),
            api_endpoints=list(config.api_endpoints),
            requirement=requirement,
            base_branch=base_branch,
        )

    def timeout_for(self, gate: str) -> int:
        return int(self.gate_timeouts.get(gate, DEFAULT_GATE_TIMEOUT_SECONDS))


def parse_diagnostics(output: str) -> tuple[list[GateError], list[str]]:
    """Split tool output into `path:line[:col]: message` errors and warning lines.

    mypy-style `[code]` suffixes and ruff-style leading codes are kept as the rule.
    """
    errors: list[GateError] = []
    warnings: list[str] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _DIAGNOSTIC_RE.match(line)
        if not match:
            continue
        message = match.group("message").strip()
        lowered = message.lower()
        if lowered.startswith("note:"):
            continue
        if lowered.startswith("warning"):
            warnings.append(line)
            continue
        rule = None
        trailing = _TRAILING_RULE_RE.search(message)
        leading = _LEADING_RULE_RE.match(message)
        if trailing:
            rule = trailing.group("rule")
        elif leading:
            rule = leading.group("rule")
        errors.append(
            GateError(
                message=message,
                file=match.group("file"),
                line=int(match.group("line")),
                column=int(match.group("column")) if match.group("column") else None,
                rule=rule,
            )
        )
    return errors, warnings


class GateContext:
    """Resources shared by the gates of one pipeline run.

    The dev server is started on first use and torn down by `close()`.
    """

    def __init__(self, pipeline_input: PipelineInput) -> None:
        self.pipeline_input = pipeline_input
        self._dev_server: Optional[DevServer] = None

    def dev_server(self) -> DevServer:
        config = self.pipeline_input.dev_server
        if config is None:
            raise DevServerError("No dev_server configured")
        if self._dev_server is None:
            self._dev_server = DevServer(config, self.pipeline_input.project_dir)
        return self._dev_server.start()

    @property
    def dev_server_started(self) -> bool:
        return self._dev_server is not None and self._dev_server.started

    def close(self) -> None:
        if self._dev_server is not None:
            self._dev_server.stop()
            self._dev_server = None
