"""Create, merge and dispose of isolated git worktrees.

Worktrees live outside the main checkout at `<parent>/.forge-wt/<repo-name>/`
to keep paths short and out of the repository's own file tree.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..constants import PROTECTED_BRANCHES, WORK_BRANCH_SUFFIX, WORKTREE_ROOT_NAME
from ..errors import RunAborted
from ..utils import _session_id


class WorktreeError(RuntimeError):
    """A git worktree or branch operation failed."""


class MergeConflictError(WorktreeError, RunAborted):
    """The work branch cannot be fast-forwarded onto its base branch."""

    def __init__(self, branch: str, base_branch: str, detail: str = "") -> None:
        self.branch = branch
        self.base_branch = base_branch
        self.detail = detail
        message = f"Cannot fast-forward {base_branch} to {branch}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass
class WorktreeHandle:
    path: Path
    branch: str
    session_id: str


@dataclass
class WorktreeInfo:
    path: Path
    branch: str
    head: str
    is_main: bool


@dataclass
class CleanupResult:
    removed: list[dict[str, str]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_checked(args: list[str], cwd: Path) -> str:
    result = _git(args, cwd)
    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise WorktreeError(f"git {args[0]} failed: {detail}")
    return result.stdout.strip()


def get_repo_root(cwd: Path) -> Path:
    return Path(_git_checked(["rev-parse", "--show-toplevel"], Path(cwd))).resolve()


def get_worktree_base_dir(repo_root: Path) -> Path:
    root = Path(repo_root).resolve()
    return root.parent / WORKTREE_ROOT_NAME / root.name


def work_branch_name(base_branch: str, label: str) -> str:
    """Branch for one requirement's worktree, namespaced under its base branch.

    git cannot hold both `refs/heads/<base>` and `refs/heads/<base>/<label>`,
    so the namespace is `<base>-wt/`.
    """
    return f"{base_branch}{WORK_BRANCH_SUFFIX}/{label}"


def current_branch(repo_root: Path) -> Optional[str]:
    result = _git(["rev-parse", "--abbrev-ref", "HEAD"], Path(repo_root))
    if result.returncode != 0:
        return None
    branch = result.stdout.strip()
    return None if branch == "HEAD" else branch


def branch_exists(repo_root: Path, branch: str) -> bool:
    return _git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], Path(repo_root)).returncode == 0


def ensure_branch(repo_root: Path, branch: str) -> bool:
    """Create `branch` at HEAD without checking it out. Returns True if it was created."""
    if branch_exists(repo_root, branch):
        return False
    _git_checked(["branch", branch], Path(repo_root))
    logger.info("Created base branch {} at HEAD", branch)
    return True


def create_worktree(
    repo_root: Path,
    name: str,
    base_branch: Optional[str] = None,
    branch_name: Optional[str] = None,
    dir_name: Optional[str] = None,
) -> WorktreeHandle:
    """Add a worktree on a new branch, or attach to the branch if it already exists.

    Raises:
        WorktreeError: If neither `git worktree add` form succeeds.
    """
    repo_root = Path(repo_root)
    session_id = _session_id()
    path = get_worktree_base_dir(repo_root) / (dir_name or session_id)
    branch = branch_name or f"forge/{name}"
    path.parent.mkdir(parents=True, exist_ok=True)

    create_args = ["worktree", "add", "-b", branch, str(path)]
    if base_branch:
        create_args.append(base_branch)
    result = _git(create_args, repo_root)
    if result.returncode != 0:
        logger.debug("worktree add -b {} failed, attaching to existing branch: {}", branch, result.stderr.strip())
        retry = _git(["worktree", "add", str(path), branch], repo_root)
        if retry.returncode != 0:
            detail = (retry.stderr or retry.stdout).strip()
            raise WorktreeError(f"Failed to create worktree at {path} on branch {branch}: {detail}")

    logger.info("Created worktree {} on branch {}", path, branch)
    return WorktreeHandle(path=path, branch=branch, session_id=session_id)


def list_worktrees(repo_root: Path) -> list[WorktreeInfo]:
    output = _git_checked(["worktree", "list", "--porcelain"], Path(repo_root))
    worktrees: list[WorktreeInfo] = []
    for block in output.split("\n\n"):
        lines = [line for line in block.splitlines() if line.strip()]
        if not lines:
            continue
        path = ""
        head = ""
        branch = "(detached)"
        bare = False
        for line in lines:
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("HEAD "):
                head = line[len("HEAD "):]
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "bare":
                bare = True
        if not path:
            continue
        worktrees.append(
            WorktreeInfo(path=Path(path), branch=branch, head=head, is_main=not worktrees or bare)
        )
    return worktrees


def is_worktree_valid(path: Path) -> bool:
    path = Path(path)
    if not path.is_dir():
        return False
    result = _git(["rev-parse", "--is-inside-work-tree"], path)
    return result.returncode == 0 and result.stdout.strip() == "true"


def remove_worktree(repo_root: Path, path: Path) -> None:
    """Remove a worktree. Removing one that is already gone is not an error."""
    repo_root = Path(repo_root)
    path = Path(path)
    result = _git(["worktree", "remove", "--force", str(path)], repo_root)
    if result.returncode != 0 and path.exists():
        logger.warning("git worktree remove failed for {}, deleting directory: {}", path, result.stderr.strip())
        shutil.rmtree(path, ignore_errors=True)
    prune = _git(["worktree", "prune"], repo_root)
    if prune.returncode != 0:
        logger.warning("git worktree prune failed: {}", prune.stderr.strip())


def delete_branch(repo_root: Path, branch: str, force: bool = False) -> bool:
    """Delete a local branch. Protected and checked-out branches are left alone.

    `force` uses `-D`, for branches merged by a fast-forward that git may not
    consider merged from the current HEAD.
    """
    if branch in PROTECTED_BRANCHES:
        logger.warning("Refusing to delete protected branch {}", branch)
        return False
    if branch == current_branch(repo_root):
        logger.warning("Refusing to delete checked-out branch {}", branch)
        return False
    result = _git(["branch", "-D" if force else "-d", branch], Path(repo_root))
    if result.returncode != 0:
        logger.warning("Failed to delete branch {}: {}", branch, result.stderr.strip())
        return False
    return True


def merge_fast_forward(repo_root: Path, branch: str, base_branch: str) -> None:
    """Advance `base_branch` to `branch`, refusing anything but a fast-forward.

    Raises:
        MergeConflictError: If `base_branch` has diverged from `branch`.
        WorktreeError: If `base_branch` is checked out in another worktree.
    """
    repo_root = Path(repo_root)
    if current_branch(repo_root) == base_branch:
        result = _git(["merge", "--ff-only", branch], repo_root)
    else:
        for info in list_worktrees(repo_root):
            if info.branch == base_branch and info.path.resolve() != repo_root.resolve():
                raise WorktreeError(
                    f"Cannot merge {branch}: base branch {base_branch} is checked out in {info.path}; "
                    "switch that worktree to another branch and retry"
                )
        result = _git(["fetch", ".", f"{branch}:{base_branch}"], repo_root)
    if result.returncode != 0:
        raise MergeConflictError(branch, base_branch, (result.stderr or result.stdout).strip())
    logger.info("Fast-forwarded {} to {}", base_branch, branch)


def commit_pending_changes(worktree: Path, message: str) -> bool:
    """Commit anything left uncommitted in `worktree`. Returns True if a commit was made."""
    worktree = Path(worktree)
    status = _git_checked(["status", "--porcelain"], worktree)
    if not status:
        return False
    _git_checked(["add", "-A"], worktree)
    _git_checked(["commit", "-m", message], worktree)
    logger.info("Committed leftover changes in {}", worktree)
    return True


def cleanup_stale_worktrees(repo_root: Path, sessions: Iterable) -> CleanupResult:
    """Remove the worktrees of stale sessions.

    A worktree that no longer exists counts as removed.
    """
    result = CleanupResult()
    for session in sessions:
        try:
            if Path(session.worktree_path).exists():
                remove_worktree(repo_root, Path(session.worktree_path))
            result.removed.append(
                {"session_id": session.id, "worktree_path": str(session.worktree_path), "branch": session.branch}
            )
        except (OSError, WorktreeError) as exc:
            result.errors.append({"session_id": session.id, "error": str(exc)})
    return result
