"""Track live runner sessions in `.forge/sessions.yaml`.

Each session records the worktree and branch it owns plus the pid of the
process driving it, so crashed runs can be detected and swept later.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import (
    SESSION_STATUS_ACTIVE,
    SESSION_STATUS_STALE,
    SESSION_STATUSES,
    SESSIONS_FILE,
    SESSIONS_LOCK_FILE,
    STATE_DIR_NAME,
)
from ..io_utils import FileLock, _load_data_with_error, _save_data
from ..utils import _now_iso, _session_id
from .identity import UserIdentity
from .manager import cleanup_stale_worktrees, delete_branch


@dataclass
class Session:
    id: str
    user: str
    email: str
    skill: str
    branch: str
    worktree_path: str
    started_at: str
    pid: int
    status: str = SESSION_STATUS_ACTIVE
    requirement: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        status = str(data.get("status") or SESSION_STATUS_ACTIVE)
        if status not in SESSION_STATUSES:
            status = SESSION_STATUS_STALE
        return cls(
            id=str(data["id"]),
            user=str(data.get("user") or "unknown"),
            email=str(data.get("email") or "unknown"),
            skill=str(data.get("skill") or "run"),
            branch=str(data.get("branch") or ""),
            worktree_path=str(data.get("worktree_path") or ""),
            started_at=str(data.get("started_at") or ""),
            pid=int(data.get("pid") or 0),
            status=status,
            requirement=data.get("requirement"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "user": self.user,
            "email": self.email,
            "skill": self.skill,
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "started_at": self.started_at,
            "pid": self.pid,
            "status": self.status,
        }
        if self.requirement:
            data["requirement"] = self.requirement
        return data


class SessionRegistryError(RuntimeError):
    pass


def registry_path(repo_root: Path) -> Path:
    return Path(repo_root) / STATE_DIR_NAME / SESSIONS_FILE


def _lock(repo_root: Path) -> FileLock:
    return FileLock(Path(repo_root) / STATE_DIR_NAME / SESSIONS_LOCK_FILE)


def load_registry(repo_root: Path) -> list[Session]:
    """Load sessions. A missing file is an empty registry; a corrupt one raises.

    Raises:
        SessionRegistryError: If the registry exists but cannot be parsed.
    """
    data, err = _load_data_with_error(registry_path(repo_root), {"sessions": []})
    if err:
        raise SessionRegistryError(f"Unable to read session registry: {err}")
    sessions: list[Session] = []
    for raw in data.get("sessions") or []:
        if not isinstance(raw, dict) or "id" not in raw:
            logger.warning("Skipping malformed session entry: {}", raw)
            continue
        sessions.append(Session.from_dict(raw))
    return sessions


def save_registry(repo_root: Path, sessions: list[Session]) -> None:
    _save_data(registry_path(repo_root), {"sessions": [s.to_dict() for s in sessions]})


def register_session(
    repo_root: Path,
    *,
    user: UserIdentity,
    branch: str,
    worktree_path: Path,
    skill: str = "run",
    requirement: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Session:
    session = Session(
        id=session_id or _session_id(),
        user=user.name,
        email=user.email,
        skill=skill,
        branch=branch,
        worktree_path=str(worktree_path),
        started_at=_now_iso(),
        pid=os.getpid(),
        requirement=requirement,
    )
    with _lock(repo_root):
        sessions = load_registry(repo_root)
        sessions.append(session)
        save_registry(repo_root, sessions)
    logger.debug("Registered session {} for {}", session.id, branch)
    return session


def deregister_session(repo_root: Path, session_id: str) -> None:
    with _lock(repo_root):
        sessions = load_registry(repo_root)
        remaining = [s for s in sessions if s.id != session_id]
        if len(remaining) != len(sessions):
            save_registry(repo_root, remaining)


def update_session_status(repo_root: Path, session_id: str, status: str) -> bool:
    if status not in SESSION_STATUSES:
        raise ValueError(f"Unknown session status: {status}")
    with _lock(repo_root):
        sessions = load_registry(repo_root)
        for session in sessions:
            if session.id == session_id:
                session.status = status
                save_registry(repo_root, sessions)
                return True
    return False


def get_session(repo_root: Path, session_id: str) -> Optional[Session]:
    for session in load_registry(repo_root):
        if session.id == session_id:
            return session
    return None


def get_active_sessions(repo_root: Path) -> list[Session]:
    return [s for s in load_registry(repo_root) if s.status == SESSION_STATUS_ACTIVE]


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def detect_stale_sessions(repo_root: Path) -> list[Session]:
    """Mark active sessions whose pid is gone as stale and return them."""
    with _lock(repo_root):
        sessions = load_registry(repo_root)
        newly_stale = []
        for session in sessions:
            if session.status == SESSION_STATUS_ACTIVE and not _pid_alive(session.pid):
                session.status = SESSION_STATUS_STALE
                newly_stale.append(session)
        if newly_stale:
            save_registry(repo_root, sessions)
    return newly_stale


def sweep_stale_sessions(repo_root: Path):
    """Remove worktrees and branches owned by stale sessions, then forget them.

    Returns the `CleanupResult` of the worktree removal. Sessions whose
    cleanup failed stay in the registry for another attempt.
    """
    detect_stale_sessions(repo_root)
    stale = [s for s in load_registry(repo_root) if s.status == SESSION_STATUS_STALE]
    result = cleanup_stale_worktrees(repo_root, stale)
    cleaned = {entry["session_id"] for entry in result.removed}
    for session in stale:
        if session.id in cleaned and session.branch:
            delete_branch(repo_root, session.branch, force=True)
    if cleaned:
        with _lock(repo_root):
            sessions = [s for s in load_registry(repo_root) if s.id not in cleaned]
            save_registry(repo_root, sessions)
    for entry in result.errors:
        logger.warning("Failed to clean up session {}: {}", entry["session_id"], entry["error"])
    logger.info("Swept {} stale session(s)", len(cleaned))
    return result
