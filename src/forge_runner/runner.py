#!/usr/bin/env python3
"""Provide the `forge-runner` CLI.

Runs requirement graphs stored under `.planning/graph/<slug>/` and exposes the
read-only views (validation, readiness, status) operators use between runs.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import load_config
from .errors import RunAborted
from .gates import PipelineInput, run_pipeline, write_verify_cache
from .gates.pipeline import verify_cache_path
from .graph.models import GraphError, RequirementStatus
from .graph.query import find_blocked, find_ready, group_status, is_project_complete
from .graph.store import GraphStore, discover_graphs, load_and_validate
from .io_utils import _load_data_with_error
from .logging_utils import configure_logging
from .orchestrator import NON_FATAL_ISSUES, run_graph
from .worktree.manager import WorktreeError, current_branch, get_repo_root
from .worktree.session import SessionRegistryError, load_registry, sweep_stale_sessions

COMMANDS = ("run", "validate", "status", "ready", "verify", "sessions", "promote", "reject")

configure_logging()


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _base_parser(description: str, *, slug: bool = True, as_json: bool = True) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="forge-runner", description=description)
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    if slug:
        parser.add_argument(
            "--slug",
            default=None,
            help="Graph slug under .planning/graph/ (default: the only graph present)",
        )
    if as_json:
        parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity (default: INFO)",
    )
    return parser


def _resolve_slug(project_dir: Path, slug: Optional[str]) -> str:
    if slug:
        return slug
    slugs = discover_graphs(project_dir)
    if len(slugs) == 1:
        return slugs[0]
    if not slugs:
        raise SystemExit(f"No graphs found under {project_dir / '.planning' / 'graph'}")
    raise SystemExit(f"Several graphs found ({', '.join(slugs)}); pass --slug")


def _run_command(project_dir: Path, slug: str, *, as_json: bool) -> int:
    try:
        summary = run_graph(project_dir, slug)
    except (RunAborted, WorktreeError, GraphError) as exc:
        logger.error("Run aborted: {}", exc)
        if as_json:
            _write_json({"status": "aborted", "error_type": type(exc).__name__, "error": str(exc)})
        return 1
    if as_json:
        _write_json({"status": "complete", **summary.to_dict()})
    else:
        Console().print(f"[green]Graph '{slug}' complete.[/green] Ran {len(summary.completed)} requirement(s).")
    return 0


def _validate_command(project_dir: Path, slug: str, *, as_json: bool) -> int:
    graph, issues = load_and_validate(GraphStore(project_dir, slug))
    fatal = [issue for issue in issues if issue.type not in NON_FATAL_ISSUES]
    if as_json:
        _write_json({"valid": graph is not None and not fatal, "issues": [i.to_dict() for i in issues]})
    elif not issues:
        Console().print(f"[green]Graph '{slug}' is valid.[/green]")
    else:
        table = Table(title=f"Validation issues for '{slug}'")
        table.add_column("Type")
        table.add_column("Message")
        for issue in issues:
            style = "yellow" if issue.type in NON_FATAL_ISSUES else "red"
            table.add_row(f"[{style}]{issue.type}[/{style}]", escape(issue.message))
        Console().print(table)
    return 0 if graph is not None and not fatal else 1


def _status_command(project_dir: Path, slug: str, *, as_json: bool) -> int:
    index = GraphStore(project_dir, slug).load_index()
    groups = group_status(index)
    cache, cache_err = _load_data_with_error(verify_cache_path(project_dir), {})
    payload = {
        "project": index.project,
        "slug": index.slug,
        "branch": index.branch,
        "complete": is_project_complete(index),
        "ready": find_ready(index),
        "groups": {key: vars(status) for key, status in groups.items()},
        "requirements": {req_id: meta.to_dict() for req_id, meta in index.requirements.items()},
        "last_verify": cache or None,
        "errors": [cache_err] if cache_err else [],
    }
    if as_json:
        _write_json(payload)
        return 0

    console = Console()
    console.print(f"Project: {index.project}  Branch: {index.branch}  Complete: {payload['complete']}")
    group_table = Table(title="Groups")
    for column in ("Group", "Total", "Complete", "In progress", "Pending", "Discovered", "Rejected"):
        group_table.add_column(column)
    for key, status in groups.items():
        group_table.add_row(
            index.groups[key].name,
            str(status.total),
            str(status.complete),
            str(status.in_progress),
            str(status.pending),
            str(status.discovered),
            str(status.rejected),
        )
    console.print(group_table)

    req_table = Table(title="Requirements")
    for column in ("Id", "Group", "Status", "Depends on", "Priority"):
        req_table.add_column(column)
    for req_id, meta in index.requirements.items():
        req_table.add_row(req_id, meta.group, meta.status.value, ", ".join(meta.depends_on) or "-", str(meta.priority))
    console.print(req_table)
    if cache:
        verdict = "passed" if cache.get("passed") else "failed"
        console.print(f"Last verification: {verdict} at {cache.get('timestamp')} ({cache.get('branch') or '-'})")
    for err in payload["errors"]:
        console.print(f"[yellow]{err}[/yellow]")
    return 0


def _ready_command(project_dir: Path, slug: str, *, as_json: bool) -> int:
    index = GraphStore(project_dir, slug).load_index()
    ready = find_ready(index)
    blocked = find_blocked(index)
    if as_json:
        _write_json({"ready": ready, "blocked": blocked})
        return 0
    console = Console()
    if ready:
        console.print("Ready: " + ", ".join(ready))
    else:
        console.print("Nothing is ready.")
    for entry in blocked:
        console.print(f"  {entry['id']} waiting on {', '.join(entry['blocked_by'])}")
    return 0


def _verify_command(project_dir: Path, gates: Optional[list[str]], *, as_json: bool) -> int:
    config, err = load_config(project_dir)
    if err:
        logger.error("Invalid config: {}", err)
        return 2
    if gates:
        config = config.model_copy(update={"gates": gates})
    for gate in config.unknown_gates():
        logger.warning("Unknown gate '{}' requested; it fails this verification", gate)
    pipeline_input = PipelineInput.from_config(project_dir, config)
    result = run_pipeline(pipeline_input)
    try:
        branch = current_branch(project_dir)
    except OSError:
        branch = None
    write_verify_cache(project_dir, result, branch)
    if as_json:
        _write_json(result.to_dict())
    else:
        table = Table(title=f"Verification: {'PASSED' if result.passed else 'FAILED'}")
        for column in ("Gate", "Result", "Errors", "Duration (ms)"):
            table.add_column(column)
        for gate in result.gates:
            verdict = "skipped" if gate.skipped else ("passed" if gate.passed else "failed")
            table.add_row(gate.gate, verdict, str(len(gate.errors)), str(gate.duration_ms))
        Console().print(table)
        for gate in result.failed_gates():
            for error in gate.errors[:10]:
                loc = error.location()
                Console().print(f"  [red]{gate.gate}[/red] {escape(loc + ': ' if loc else '')}{escape(error.message)}")
    return 0 if result.passed else 1


def _sessions_command(project_dir: Path, *, sweep: bool, as_json: bool) -> int:
    try:
        repo_root = get_repo_root(project_dir)
    except WorktreeError as exc:
        logger.error("{}", exc)
        return 1
    try:
        if sweep:
            result = sweep_stale_sessions(repo_root)
            if as_json:
                _write_json({"removed": result.removed, "errors": result.errors})
            else:
                Console().print(f"Removed {len(result.removed)} stale session(s); {len(result.errors)} error(s).")
            return 1 if result.errors else 0
        sessions = load_registry(repo_root)
    except SessionRegistryError as exc:
        logger.error("{}", exc)
        return 2

    if as_json:
        _write_json({"sessions": [s.to_dict() for s in sessions]})
        return 0
    table = Table(title="Sessions")
    for column in ("Id", "Status", "Requirement", "Branch", "Pid", "Started", "User"):
        table.add_column(column)
    for s in sessions:
        table.add_row(s.id, s.status, s.requirement or "-", s.branch, str(s.pid), s.started_at, s.user)
    Console().print(table)
    return 0


def _triage_command(project_dir: Path, slug: str, requirement_id: str, reason: Optional[str]) -> int:
    store = GraphStore(project_dir, slug)
    try:
        if reason is None:
            store.promote_discovered(requirement_id)
        else:
            store.reject_discovered(requirement_id, reason)
    except (GraphError, ValueError) as exc:
        logger.error("{}", exc)
        return 1
    status = RequirementStatus.PENDING if reason is None else RequirementStatus.REJECTED
    Console().print(f"{requirement_id} -> {status.value}")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `forge-runner` CLI.

    Raises:
        SystemExit: Always, carrying the subcommand's exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS:
        top = argparse.ArgumentParser(prog="forge-runner", description="Requirement graph runner")
        top.add_argument("command", choices=COMMANDS)
        top.parse_args(argv[:1])
        raise SystemExit(2)

    command, rest = argv[0], argv[1:]
    if command == "run":
        args = _base_parser("Run a requirement graph to completion").parse_args(rest)
    elif command == "validate":
        args = _base_parser("Validate a requirement graph").parse_args(rest)
    elif command == "status":
        args = _base_parser("Show graph progress").parse_args(rest)
    elif command == "ready":
        args = _base_parser("List requirements ready to run").parse_args(rest)
    elif command == "verify":
        parser = _base_parser("Run the verification gates in the project directory", slug=False)
        parser.add_argument("--gates", nargs="+", default=None, help="Gates to run (default: from config)")
        args = parser.parse_args(rest)
    elif command == "sessions":
        parser = _base_parser("List or sweep runner sessions", slug=False)
        parser.add_argument("--sweep", action="store_true", help="Remove worktrees of stale sessions")
        args = parser.parse_args(rest)
    elif command == "promote":
        parser = _base_parser("Promote a discovered requirement to pending", as_json=False)
        parser.add_argument("requirement_id")
        args = parser.parse_args(rest)
    else:
        parser = _base_parser("Reject a discovered requirement", as_json=False)
        parser.add_argument("requirement_id")
        parser.add_argument("--reason", required=True)
        args = parser.parse_args(rest)

    configure_logging(args.log_level)
    project_dir = args.project_dir.resolve()
    as_json = bool(getattr(args, "json", False))

    if command == "verify":
        raise SystemExit(_verify_command(project_dir, args.gates, as_json=as_json))
    if command == "sessions":
        raise SystemExit(_sessions_command(project_dir, sweep=args.sweep, as_json=as_json))

    slug = _resolve_slug(project_dir, args.slug)
    try:
        if command == "run":
            raise SystemExit(_run_command(project_dir, slug, as_json=as_json))
        if command == "validate":
            raise SystemExit(_validate_command(project_dir, slug, as_json=as_json))
        if command == "status":
            raise SystemExit(_status_command(project_dir, slug, as_json=as_json))
        if command == "ready":
            raise SystemExit(_ready_command(project_dir, slug, as_json=as_json))
        if command == "promote":
            raise SystemExit(_triage_command(project_dir, slug, args.requirement_id, None))
        raise SystemExit(_triage_command(project_dir, slug, args.requirement_id, args.reason))
    except (FileNotFoundError, GraphError) as exc:
        logger.error("{}", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
