"""Tests for the worktree session registry."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import git
from forge_runner.worktree import (
    SessionRegistryError,
    UserIdentity,
    create_worktree,
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
from forge_runner.worktree.manager import branch_exists
from forge_runner.worktree.session import registry_path

USER = UserIdentity(name="Test", email="test@test.com")


def test_register_and_deregister(tmp_path: Path) -> None:
    session = register_session(tmp_path, user=USER, branch="feat/x", worktree_path=tmp_path / "wt", requirement="REQ-001")
    assert session.pid == os.getpid()
    assert registry_path(tmp_path).exists()

    loaded = get_session(tmp_path, session.id)
    assert loaded is not None
    assert loaded.requirement == "REQ-001"
    assert loaded.user == "Test"
    assert [s.id for s in get_active_sessions(tmp_path)] == [session.id]

    deregister_session(tmp_path, session.id)
    assert load_registry(tmp_path) == []
    deregister_session(tmp_path, session.id)


def test_update_status_validates_names(tmp_path: Path) -> None:
    session = register_session(tmp_path, user=USER, branch="b", worktree_path=tmp_path / "wt")
    assert update_session_status(tmp_path, session.id, "completing")
    assert get_session(tmp_path, session.id).status == "completing"
    assert not update_session_status(tmp_path, "missing", "active")
    with pytest.raises(ValueError):
        update_session_status(tmp_path, session.id, "exploded")


def test_corrupt_registry_raises(tmp_path: Path) -> None:
    path = registry_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("sessions: [\n", encoding="utf-8")
    with pytest.raises(SessionRegistryError):
        load_registry(tmp_path)


def test_dead_pid_marks_session_stale(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    alive = register_session(tmp_path, user=USER, branch="a", worktree_path=tmp_path / "a")
    dead = register_session(tmp_path, user=USER, branch="b", worktree_path=tmp_path / "b")
    sessions = load_registry(tmp_path)
    for s in sessions:
        if s.id == dead.id:
            s.pid = 999_999_999
    save_registry(tmp_path, sessions)

    stale = detect_stale_sessions(tmp_path)
    assert [s.id for s in stale] == [dead.id]
    assert get_session(tmp_path, dead.id).status == "stale"
    assert get_session(tmp_path, alive.id).status == "active"
    assert detect_stale_sessions(tmp_path) == []


def test_sweep_removes_stale_worktrees_and_branches(repo: Path) -> None:
    handle = create_worktree(repo, "REQ-001", base_branch="main", branch_name="feat/demo-wt/REQ-001")
    session = register_session(repo, user=USER, branch=handle.branch, worktree_path=handle.path)
    gone = register_session(repo, user=USER, branch="", worktree_path=repo.parent / "already-gone")

    sessions = load_registry(repo)
    for s in sessions:
        s.pid = 999_999_999
    save_registry(repo, sessions)

    result = sweep_stale_sessions(repo)
    assert {entry["session_id"] for entry in result.removed} == {session.id, gone.id}
    assert result.errors == []
    assert not handle.path.exists()
    assert not branch_exists(repo, handle.branch)
    assert load_registry(repo) == []
    assert "feat/demo-wt/REQ-001" not in git(repo, "branch", "--list")
