"""Requirement graph: data model, file store, validation and scheduling queries."""

from __future__ import annotations

from .models import (
    DuplicateRequirementError,
    GraphError,
    GraphExistsError,
    GraphIndex,
    GraphSchemaError,
    GroupDef,
    GroupStatus,
    LinearConfig,
    ProjectGraph,
    Requirement,
    RequirementFiles,
    RequirementMeta,
    RequirementNotFoundError,
    RequirementStatus,
    ValidationIssue,
)
from .query import (
    build_requirement_context,
    compute_waves,
    find_blocked,
    find_discovered,
    find_in_progress,
    find_ready,
    get_transitive_deps,
    group_status,
    is_project_complete,
)
from .store import GraphStore, discover_graphs, load_and_validate
from .validator import detect_cycles, find_dangling_edges, find_file_conflicts, find_orphans, validate_graph

__all__ = [
    "DuplicateRequirementError",
    "GraphError",
    "GraphExistsError",
    "GraphIndex",
    "GraphSchemaError",
    "GraphStore",
    "GroupDef",
    "GroupStatus",
    "LinearConfig",
    "ProjectGraph",
    "Requirement",
    "RequirementFiles",
    "RequirementMeta",
    "RequirementNotFoundError",
    "RequirementStatus",
    "ValidationIssue",
    "build_requirement_context",
    "compute_waves",
    "detect_cycles",
    "discover_graphs",
    "find_blocked",
    "find_dangling_edges",
    "find_discovered",
    "find_file_conflicts",
    "find_in_progress",
    "find_orphans",
    "find_ready",
    "get_transitive_deps",
    "group_status",
    "is_project_complete",
    "load_and_validate",
    "validate_graph",
]
