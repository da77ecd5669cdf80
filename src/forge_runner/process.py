from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from loguru import logger

from .constants import TIMEOUT_EXIT_CODE

LineCallback = Callable[[str], None]
Command = Union[str, Sequence[str]]


@dataclass
class ProcessResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def _render_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


def _read_lines(pipe: Any, sink: list[str], callback: Optional[LineCallback]) -> None:
    for line in iter(pipe.readline, ""):
        sink.append(line)
        if callback is None:
            continue
        try:
            callback(line.rstrip("\n"))
        except Exception as exc:
            logger.debug("Output callback failed: {}", exc)
    try:
        pipe.close()
    except OSError:
        pass


class ManagedProcess:
    """A child process whose output is read line by line on reader threads.

    With `shell=False` a string command is split with `shlex`; a missing
    executable raises `FileNotFoundError` from `start()`.
    """

    def __init__(
        self,
        command: Command,
        cwd: Path,
        *,
        env: Optional[dict[str, str]] = None,
        stdin_text: Optional[str] = None,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
        shell: bool = False,
        new_session: bool = False,
    ) -> None:
        self.command = command
        self.cwd = Path(cwd)
        self.env = env
        self.stdin_text = stdin_text
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.shell = shell
        self.new_session = new_session
        self._process: Optional[subprocess.Popen] = None
        self._threads: list[threading.Thread] = []
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._started_at = 0.0
        self._timed_out = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> "ManagedProcess":
        if self._process is not None:
            raise RuntimeError("Process already started")
        if self.shell:
            args: Any = _render_command(self.command)
        elif isinstance(self.command, str):
            args = shlex.split(self.command)
        else:
            args = list(self.command)

        self._started_at = time.monotonic()
        self._process = subprocess.Popen(
            args,
            cwd=self.cwd,
            env=self.env,
            shell=self.shell,
            stdin=subprocess.PIPE if self.stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            start_new_session=self.new_session and os.name != "nt",
        )
        for pipe, sink, callback in (
            (self._process.stdout, self._stdout, self.on_stdout),
            (self._process.stderr, self._stderr, self.on_stderr),
        ):
            thread = threading.Thread(target=_read_lines, args=(pipe, sink, callback), daemon=True)
            thread.start()
            self._threads.append(thread)

        if self.stdin_text is not None and self._process.stdin:
            try:
                self._process.stdin.write(self.stdin_text)
                self._process.stdin.flush()
            except BrokenPipeError:
                logger.debug("Child closed stdin before the prompt was fully written")
            finally:
                try:
                    self._process.stdin.close()
                except BrokenPipeError:
                    pass
        return self

    def wait(self, timeout: Optional[float] = None) -> ProcessResult:
        if self._process is None:
            raise RuntimeError("Process not started")
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._timed_out = True
            logger.warning("Command timed out after {}s: {}", timeout, _render_command(self.command))
            self.terminate()

        for thread in self._threads:
            thread.join(timeout=5)

        exit_code = self._process.poll()
        if self._timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif exit_code is None:
            exit_code = -1
        return ProcessResult(
            command=_render_command(self.command),
            exit_code=exit_code,
            stdout="".join(self._stdout),
            stderr="".join(self._stderr),
            duration_seconds=time.monotonic() - self._started_at,
            timed_out=self._timed_out,
        )

    def terminate(self, grace_seconds: float = 5) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        self._signal(signal.SIGTERM)
        try:
            self._process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal(signal.SIGKILL if os.name != "nt" else signal.SIGTERM)
            self._process.wait()

    def _signal(self, sig: int) -> None:
        assert self._process is not None
        if self.new_session and os.name != "nt":
            try:
                os.killpg(self._process.pid, sig)
            except ProcessLookupError:
                pass
            return
        self._process.send_signal(sig)


def run_process(
    command: Command,
    cwd: Path,
    *,
    timeout: Optional[float] = None,
    env: Optional[dict[str, str]] = None,
    stdin_text: Optional[str] = None,
    on_stdout: Optional[LineCallback] = None,
    on_stderr: Optional[LineCallback] = None,
    shell: bool = False,
) -> ProcessResult:
    """Run a command to completion and capture its output.

    A timeout terminates the child (then kills it) and reports exit code 124.
    """
    proc = ManagedProcess(
        command,
        cwd,
        env=env,
        stdin_text=stdin_text,
        on_stdout=on_stdout,
        on_stderr=on_stderr,
        shell=shell,
        new_session=shell,
    )
    proc.start()
    return proc.wait(timeout=timeout)


def env_without(*names: str) -> dict[str, str]:
    env = dict(os.environ)
    for name in names:
        env.pop(name, None)
    return env
