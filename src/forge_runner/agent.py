from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from .constants import DEFAULT_AGENT_COMMAND
from .process import ProcessResult, env_without, run_process

# Set inside an agent session; nested agent CLIs refuse to start while it is present.
NESTED_SESSION_ENV = "CLAUDECODE"


def _echo(label: str, to_stderr: bool):
    stream = sys.stderr if to_stderr else sys.stdout
    prefix = f"[agent {label}] "

    def write(line: str) -> None:
        stream.write(prefix + line + "\n")
        stream.flush()

    return write


class AgentRunner:
    """Run the external coding agent once with a prompt on stdin.

    Output is echoed live with an `[agent ...]` prefix. There is no timeout;
    the agent decides when it is done.
    """

    def __init__(self, command: str = DEFAULT_AGENT_COMMAND, *, quiet: bool = False) -> None:
        self.command = command
        self.quiet = quiet

    def run(self, prompt: str, cwd: Path) -> ProcessResult:
        logger.info("Spawning agent in {}", cwd)
        result = run_process(
            self.command,
            Path(cwd),
            env=env_without(NESTED_SESSION_ENV),
            stdin_text=prompt,
            on_stdout=None if self.quiet else _echo("stdout", False),
            on_stderr=None if self.quiet else _echo("stderr", True),
        )
        if result.exit_code != 0:
            logger.warning("Agent exited with status {}", result.exit_code)
        else:
            logger.info("Agent finished in {:.1f}s", result.duration_seconds)
        return result
