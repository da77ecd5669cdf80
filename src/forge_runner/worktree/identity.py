from __future__ import annotations

import getpass
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class UserIdentity:
    name: str
    email: str


def _git_config(key: str, cwd: Optional[Path]) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "config", key],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    value = result.stdout.strip()
    if result.returncode != 0 or not value:
        return None
    return value


def get_current_user(cwd: Optional[Path] = None) -> UserIdentity:
    """Resolve the user from git config, falling back to the OS account name."""
    name = _git_config("user.name", cwd)
    if name is None:
        try:
            name = getpass.getuser()
        except (KeyError, OSError):
            name = "unknown"
    return UserIdentity(name=name, email=_git_config("user.email", cwd) or "unknown")
