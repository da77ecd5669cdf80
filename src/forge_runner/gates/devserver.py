from __future__ import annotations

import re
import socket
import threading
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import DevServerConfig
from ..process import ManagedProcess


class DevServerError(RuntimeError):
    pass


def _port_open(port: int, host: str = "127.0.0.1") -> bool:
    try:
        with socket.create_connection((host, port), timeout=0.5):
            return True
    except OSError:
        return False


class DevServer:
    """A preview server started for the live gates and stopped afterwards.

    Readiness is either a line matching `ready_pattern` on the server's output
    or, without a pattern, the port accepting TCP connections.
    """

    def __init__(self, config: DevServerConfig, cwd: Path, poll_interval: float = 0.25) -> None:
        self.config = config
        self.cwd = Path(cwd)
        self.poll_interval = poll_interval
        self._ready = threading.Event()
        self._pattern = re.compile(config.ready_pattern) if config.ready_pattern else None
        self._process: Optional[ManagedProcess] = None

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def started(self) -> bool:
        return self._process is not None

    def _watch(self, line: str) -> None:
        logger.debug("[dev-server] {}", line)
        if self._pattern and self._pattern.search(line):
            self._ready.set()

    def start(self) -> "DevServer":
        if self._process is not None:
            return self
        if self._pattern is None and _port_open(self.config.port):
            raise DevServerError(f"Port {self.config.port} is already in use")
        logger.info("Starting dev server: {}", self.config.command)
        self._process = ManagedProcess(
            self.config.command,
            self.cwd,
            on_stdout=self._watch,
            on_stderr=self._watch,
            shell=True,
            new_session=True,
        ).start()

        deadline = time.monotonic() + self.config.startup_timeout
        while time.monotonic() < deadline:
            if self._pattern is not None and self._ready.is_set():
                return self
            if self._pattern is None and _port_open(self.config.port):
                return self
            if not self._process.running:
                result = self._process.wait(timeout=1)
                raise DevServerError(
                    f"Dev server exited with status {result.exit_code} before becoming ready"
                )
            time.sleep(self.poll_interval)
        raise DevServerError(
            f"Dev server not ready within {self.config.startup_timeout}s on port {self.config.port}"
        )

    def stop(self) -> None:
        if self._process is None:
            return
        logger.info("Stopping dev server")
        self._process.terminate()
        self._process = None
        self._ready.clear()
