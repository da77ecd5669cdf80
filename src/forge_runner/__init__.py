"""Provide the public `forge_runner` package exports."""

from __future__ import annotations

from .orchestrator import run_graph

__all__ = ["run_graph"]
