"""Load optional runner configuration from `.forge/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_DEV_SERVER_STARTUP_SECONDS,
    DEFAULT_GATE_COMMANDS,
    DEFAULT_GATES,
    DEFAULT_MAX_ITERATIONS,
    LINEAR_API_KEY_ENV,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error

KNOWN_GATES = {"types", "lint", "tests", "visual", "runtime", "coverage"}


class DevServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    port: int = Field(default=3000, gt=0, lt=65536)
    ready_pattern: Optional[str] = None
    startup_timeout: int = Field(default=DEFAULT_DEV_SERVER_STARTUP_SECONDS, gt=0)

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


class ForgeConfig(BaseModel):
    """Validated runner configuration. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    gates: list[str] = Field(default_factory=lambda: list(DEFAULT_GATES))
    gate_timeouts: dict[str, int] = Field(default_factory=dict)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    agent_command: str = Field(default=DEFAULT_AGENT_COMMAND, min_length=1)
    commands: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_GATE_COMMANDS))
    dev_server: Optional[DevServerConfig] = None
    pages: list[str] = Field(default_factory=list)
    api_endpoints: list[str] = Field(default_factory=list)
    linear_team: Optional[str] = None

    @field_validator("commands")
    @classmethod
    def _merge_default_commands(cls, value: dict[str, str]) -> dict[str, str]:
        return {**DEFAULT_GATE_COMMANDS, **value}

    def unknown_gates(self) -> list[str]:
        return [gate for gate in self.gates if gate not in KNOWN_GATES]


def config_path(project_dir: Path) -> Path:
    return Path(project_dir).resolve() / STATE_DIR_NAME / CONFIG_FILE


def load_config(project_dir: Path) -> tuple[ForgeConfig, str | None]:
    """Load and validate the optional config file.

    Returns:
        A tuple of `(config, error_message)`. A missing file yields the default
        config and no error; an unreadable or invalid file yields the default
        config plus a message describing the problem.
    """
    path = config_path(project_dir)
    data, err = _load_data_with_error(path, {})
    if err:
        return ForgeConfig(), err
    try:
        return ForgeConfig.model_validate(data), None
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ())) or '<root>'}: {e.get('msg')}" for e in exc.errors()
        )
        return ForgeConfig(), f"{path.name}: {problems}"


def linear_api_key() -> Optional[str]:
    return os.environ.get(LINEAR_API_KEY_ENV) or None
