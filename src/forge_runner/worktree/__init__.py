"""Git worktree lifecycle and the session registry that tracks who owns each one."""

from __future__ import annotations

from .identity import UserIdentity, get_current_user
from .manager import (
    CleanupResult,
    MergeConflictError,
    WorktreeError,
    WorktreeHandle,
    WorktreeInfo,
    cleanup_stale_worktrees,
    commit_pending_changes,
    create_worktree,
    delete_branch,
    ensure_branch,
    get_repo_root,
    get_worktree_base_dir,
    is_worktree_valid,
    list_worktrees,
    merge_fast_forward,
    remove_worktree,
    work_branch_name,
)
from .session import (
    Session,
    SessionRegistryError,
    deregister_session,
    detect_stale_sessions,
    get_active_sessions,
    get_session,
    load_registry,
    register_session,
    save_registry,
    sweep_stale_sessions,
    update_session_status,
)

__all__ = [
    "CleanupResult",
    "MergeConflictError",
    "Session",
    "SessionRegistryError",
    "UserIdentity",
    "WorktreeError",
    "WorktreeHandle",
    "WorktreeInfo",
    "cleanup_stale_worktrees",
    "commit_pending_changes",
    "create_worktree",
    "delete_branch",
    "deregister_session",
    "detect_stale_sessions",
    "ensure_branch",
    "get_active_sessions",
    "get_current_user",
    "get_repo_root",
    "get_session",
    "get_worktree_base_dir",
    "is_worktree_valid",
    "list_worktrees",
    "load_registry",
    "merge_fast_forward",
    "register_session",
    "remove_worktree",
    "save_registry",
    "sweep_stale_sessions",
    "update_session_status",
    "work_branch_name",
]
