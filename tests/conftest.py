"""Shared fixtures: on-disk graphs and throwaway git repositories."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Iterator, Optional

import pytest
from loguru import logger

from forge_runner.graph import GraphIndex, GraphStore, Requirement


def git_init(path: Path, branch: str = "main") -> None:
    """Initialize a git repo on `branch` with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    for args in (
        ["git", "init"],
        ["git", "symbolic-ref", "HEAD", f"refs/heads/{branch}"],
        ["git", "config", "user.email", "test@test.com"],
        ["git", "config", "user.name", "Test"],
    ):
        subprocess.run(args, cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def make_index(
    requirements: dict[str, dict[str, Any]],
    groups: Optional[dict[str, dict[str, Any]]] = None,
    branch: str = "feat/demo",
) -> GraphIndex:
    """Build an index from compact dicts; every requirement defaults to group `core`."""
    data = {
        "project": "Demo",
        "slug": "demo",
        "branch": branch,
        "createdAt": "2026-01-01T00:00:00+00:00",
        "groups": groups if groups is not None else {"core": {"name": "Core", "order": 1}},
        "requirements": {
            req_id: {"group": "core", "status": "pending", **meta} for req_id, meta in requirements.items()
        },
    }
    return GraphIndex.model_validate(data)


def make_requirement(req_id: str, title: Optional[str] = None, **extra: Any) -> Requirement:
    data = {
        "id": req_id,
        "title": title or f"Requirement {req_id}",
        "acceptance": extra.pop("acceptance", [f"{req_id} works"]),
        "body": extra.pop("body", f"Implement {req_id}."),
        **extra,
    }
    return Requirement.model_validate(data)


def write_graph(
    project_dir: Path,
    index: GraphIndex,
    requirements: Optional[list[Requirement]] = None,
    overview: str = "# Demo\n\nA demo project.\n",
) -> GraphStore:
    store = GraphStore(project_dir, index.slug)
    store.init_graph(index, overview)
    reqs = requirements if requirements is not None else [make_requirement(req_id) for req_id in index.requirements]
    for req in reqs:
        store.write_requirement(req)
    return store


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    git_init(path)
    return path


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect WARNING-and-above loguru messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
