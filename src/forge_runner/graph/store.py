"""Read and write requirement graphs under `.planning/graph/<slug>/`.

Every write goes through a uniquely named temp file plus rename, so a reader
never observes a partially written index or requirement file. Status updates
are read-modify-write cycles serialized by a lock file next to the index.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import yaml
from loguru import logger
from pydantic import ValidationError

from ..constants import (
    GRAPH_DIR_NAME,
    INDEX_FILE,
    INDEX_LOCK_FILE,
    OVERVIEW_FILE,
    PLANNING_DIR_NAME,
    REQUIREMENTS_DIR_NAME,
)
from ..io_utils import FileLock, _atomic_write_text, _dump_yaml
from ..utils import _now_iso, _title_to_slug
from .models import (
    DuplicateRequirementError,
    GraphExistsError,
    GraphIndex,
    GraphSchemaError,
    ProjectGraph,
    Requirement,
    RequirementMeta,
    RequirementStatus,
    ValidationIssue,
)
from .validator import validate_graph

_FRONTMATTER_OPEN = "---\n"
_FRONTMATTER_CLOSE = "\n---\n"


def graphs_root(project_dir: Path) -> Path:
    return project_dir / PLANNING_DIR_NAME / GRAPH_DIR_NAME


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_index(raw: str, source: Any = INDEX_FILE) -> GraphIndex:
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise GraphSchemaError(source, f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise GraphSchemaError(source, f"expected mapping, got {type(data).__name__}")
    try:
        return GraphIndex.model_validate(data)
    except ValidationError as exc:
        raise GraphSchemaError(source, _format_validation_error(exc)) from exc


def parse_requirement(raw: str, source: Any = "<requirement>") -> Requirement:
    """Parse a requirement document: YAML front matter block followed by a markdown body."""
    text = raw.replace("\r\n", "\n")
    if not text.startswith(_FRONTMATTER_OPEN):
        raise GraphSchemaError(source, "missing front matter opening ---")
    end = text.find(_FRONTMATTER_CLOSE, len(_FRONTMATTER_OPEN) - 1)
    if end == -1:
        raise GraphSchemaError(source, "missing front matter closing ---")
    header = text[len(_FRONTMATTER_OPEN):end]
    body = text[end + len(_FRONTMATTER_CLOSE):].strip()
    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        raise GraphSchemaError(source, f"invalid front matter YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise GraphSchemaError(source, "front matter must be a mapping")
    data.pop("body", None)
    try:
        return Requirement.model_validate({**data, "body": body})
    except ValidationError as exc:
        raise GraphSchemaError(source, _format_validation_error(exc)) from exc


def render_requirement(req: Requirement) -> str:
    return f"{_FRONTMATTER_OPEN}{_dump_yaml(req.frontmatter())}---\n\n{req.body}"


def discover_graphs(project_dir: Path) -> list[str]:
    """Return slugs under `.planning/graph/` whose index parses and validates."""
    root = graphs_root(project_dir)
    if not root.is_dir():
        return []
    slugs: list[str] = []
    for entry in sorted(root.iterdir()):
        index_path = entry / INDEX_FILE
        if not index_path.is_file():
            continue
        try:
            parse_index(index_path.read_text(encoding="utf-8"), index_path)
        except (OSError, GraphSchemaError) as exc:
            logger.debug("Skipping graph {}: {}", entry.name, exc)
            continue
        slugs.append(entry.name)
    return slugs


class GraphStore:
    """File-backed store for one project graph."""

    def __init__(self, project_dir: Path, slug: str) -> None:
        self.project_dir = Path(project_dir)
        self.slug = slug
        self.graph_dir = graphs_root(self.project_dir) / slug
        self.index_path = self.graph_dir / INDEX_FILE
        self.overview_path = self.graph_dir / OVERVIEW_FILE
        self.requirements_dir = self.graph_dir / REQUIREMENTS_DIR_NAME
        self._lock = FileLock(self.graph_dir / INDEX_LOCK_FILE)

    # -- index ---------------------------------------------------------------

    def load_index(self) -> GraphIndex:
        raw = self.index_path.read_text(encoding="utf-8")
        return parse_index(raw, self.index_path)

    def write_index(self, index: GraphIndex) -> None:
        _atomic_write_text(self.index_path, _dump_yaml(index.to_dict()))

    # -- overview ------------------------------------------------------------

    def load_overview(self) -> str:
        return self.overview_path.read_text(encoding="utf-8")

    def write_overview(self, content: str) -> None:
        _atomic_write_text(self.overview_path, content)

    # -- requirement content -------------------------------------------------

    def _requirement_files(self) -> list[Path]:
        if not self.requirements_dir.is_dir():
            return []
        return sorted(p for p in self.requirements_dir.iterdir() if p.suffix == ".md" and p.is_file())

    def _iter_requirements(self) -> Iterator[tuple[Path, Requirement]]:
        for path in self._requirement_files():
            yield path, parse_requirement(path.read_text(encoding="utf-8"), path)

    def load_requirement(self, requirement_id: str) -> Optional[Requirement]:
        for _path, req in self._iter_requirements():
            if req.id == requirement_id:
                return req
        return None

    def load_requirements(self, ids: Iterable[str]) -> dict[str, Requirement]:
        wanted = set(ids)
        found: dict[str, Requirement] = {}
        if not wanted:
            return found
        for _path, req in self._iter_requirements():
            if req.id in wanted:
                found[req.id] = req
                if len(found) == len(wanted):
                    break
        return found

    def load_all_requirements(self) -> dict[str, Requirement]:
        found: dict[str, Requirement] = {}
        sources: dict[str, Path] = {}
        for path, req in self._iter_requirements():
            if req.id in found:
                raise DuplicateRequirementError(
                    req.id,
                    f"Requirement id {req.id} is declared by both {sources[req.id].name} and {path.name}",
                )
            found[req.id] = req
            sources[req.id] = path
        return found

    def load_graph(self) -> ProjectGraph:
        index = self.load_index()
        overview = self.load_overview() if self.overview_path.exists() else ""
        return ProjectGraph(index=index, overview=overview, requirements=self.load_all_requirements())

    def requirement_path(self, req: Requirement) -> Path:
        return self.requirements_dir / f"{req.id}-{_title_to_slug(req.title)}.md"

    def write_requirement(self, req: Requirement) -> Path:
        target = self.requirement_path(req)
        self.requirements_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write_text(target, render_requirement(req))
        # A retitled requirement leaves its old file behind; drop it so ids stay 1:1 with files.
        for entry in self._requirement_files():
            if entry.name == target.name or not entry.name.startswith(f"{req.id}-"):
                continue
            try:
                existing = parse_requirement(entry.read_text(encoding="utf-8"), entry)
            except GraphSchemaError:
                continue
            if existing.id == req.id:
                logger.debug("Removing stale requirement file {}", entry.name)
                entry.unlink()
        return target

    # -- lifecycle -----------------------------------------------------------

    def init_graph(self, index: GraphIndex, overview: str) -> None:
        if self.graph_dir.exists():
            raise GraphExistsError(f"Graph directory already exists: {self.graph_dir}")
        self.requirements_dir.mkdir(parents=True)
        self.write_index(index)
        self.write_overview(overview)
        logger.info("Initialized graph '{}' at {}", self.slug, self.graph_dir)

    def update_requirement_status(self, requirement_id: str, status: RequirementStatus) -> GraphIndex:
        return self.batch_update_status([(requirement_id, status)])

    def batch_update_status(self, updates: list[tuple[str, RequirementStatus]]) -> GraphIndex:
        """Apply several status changes in one read-modify-write of the index.

        All ids are checked before anything changes, so an unknown id leaves the
        index untouched.
        """
        with self._lock:
            index = self.load_index()
            for requirement_id, _status in updates:
                index.meta(requirement_id)
            for requirement_id, status in updates:
                _apply_status(index.requirements[requirement_id], RequirementStatus(status))
            self.write_index(index)
        for requirement_id, status in updates:
            logger.debug("Requirement {} -> {}", requirement_id, RequirementStatus(status).value)
        return index

    def add_discovered_requirement(self, req: Requirement, meta: RequirementMeta) -> GraphIndex:
        """Track a requirement an agent found mid-run.

        The index entry is written before the content file. If the process dies
        in between, validation reports a `missing_file` issue for the id instead
        of leaving an untracked file behind.
        """
        with self._lock:
            index = self.load_index()
            if req.id in index.requirements:
                raise DuplicateRequirementError(req.id, f"Requirement already exists in index: {req.id}")
            entry = meta.model_copy(deep=True)
            entry.status = RequirementStatus.DISCOVERED
            entry.completed_at = None
            index.requirements[req.id] = entry
            self.write_index(index)
        self.write_requirement(req)
        logger.info("Recorded discovered requirement {} ({})", req.id, meta.discovered_by or "unknown")
        return index

    def promote_discovered(self, requirement_id: str) -> GraphIndex:
        return self._resolve_discovered(requirement_id, RequirementStatus.PENDING, None)

    def reject_discovered(self, requirement_id: str, reason: str) -> GraphIndex:
        return self._resolve_discovered(requirement_id, RequirementStatus.REJECTED, reason)

    def _resolve_discovered(
        self,
        requirement_id: str,
        status: RequirementStatus,
        reason: Optional[str],
    ) -> GraphIndex:
        with self._lock:
            index = self.load_index()
            meta = index.meta(requirement_id)
            if meta.status != RequirementStatus.DISCOVERED:
                raise ValueError(
                    f"Requirement {requirement_id} is {meta.status.value}, only discovered requirements can be triaged"
                )
            _apply_status(meta, status)
            meta.rejected_reason = reason
            self.write_index(index)
        logger.info("Discovered requirement {} -> {}", requirement_id, status.value)
        return index


def _apply_status(meta: RequirementMeta, status: RequirementStatus) -> None:
    meta.status = status
    meta.completed_at = _now_iso() if status == RequirementStatus.COMPLETE else None


def load_and_validate(store: GraphStore) -> tuple[Optional[ProjectGraph], list[ValidationIssue]]:
    """Load a graph and validate it, reporting load failures as issues.

    Returns `(graph, issues)`; `graph` is None when the documents could not be
    loaded at all.
    """
    try:
        graph = store.load_graph()
    except DuplicateRequirementError as exc:
        return None, [ValidationIssue("duplicate_id", str(exc), {"id": exc.requirement_id})]
    except GraphSchemaError as exc:
        return None, [ValidationIssue("schema_error", str(exc), {"path": str(exc.path), "detail": exc.detail})]
    except FileNotFoundError as exc:
        return None, [ValidationIssue("schema_error", f"Graph file not found: {exc.filename}", {"path": exc.filename})]
    return graph, validate_graph(graph)
