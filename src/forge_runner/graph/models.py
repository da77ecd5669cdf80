"""Define the requirement graph data model and its on-disk schemas.

The Graph Index (`_index.yaml`) and requirement front matter are parsed into
pydantic models so malformed documents fail loudly at load time. Field names
are snake_case in Python and camelCase on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RequirementStatus(str, Enum):
    """Represent the lifecycle state of a requirement."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    DISCOVERED = "discovered"
    REJECTED = "rejected"


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequirementFiles(_Schema):
    """Files a requirement is expected to create or modify."""

    creates: list[str] = Field(default_factory=list)
    modifies: list[str] = Field(default_factory=list)

    def all_paths(self) -> list[str]:
        return [*self.creates, *self.modifies]


class RequirementMeta(_Schema):
    """Requirement metadata stored in `_index.yaml`."""

    group: str = Field(min_length=1)
    status: RequirementStatus
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    priority: int = 0
    linear_issue_id: Optional[str] = Field(default=None, alias="linearIssueId")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    discovered_by: Optional[str] = Field(default=None, alias="discoveredBy")
    rejected_reason: Optional[str] = Field(default=None, alias="rejectedReason")

    @model_validator(mode="after")
    def _completed_at_only_when_complete(self) -> "RequirementMeta":
        if self.completed_at and self.status != RequirementStatus.COMPLETE:
            raise ValueError(f"completedAt is only allowed when status is complete (status={self.status.value})")
        return self


class GroupDef(_Schema):
    """Organizational grouping of requirements with its own dependency ordering."""

    name: str = Field(min_length=1)
    order: Optional[int] = Field(default=None, gt=0)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    linear_milestone_id: Optional[str] = Field(default=None, alias="linearMilestoneId")


class LinearConfig(_Schema):
    project_id: str = Field(min_length=1, alias="projectId")
    team_id: str = Field(min_length=1, alias="teamId")


class GraphIndex(_Schema):
    """Full `_index.yaml` structure, the single source of truth for statuses and dependencies."""

    project: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    branch: str = Field(min_length=1)
    created_at: str = Field(min_length=1, alias="createdAt")
    linear: Optional[LinearConfig] = None
    groups: dict[str, GroupDef] = Field(default_factory=dict)
    requirements: dict[str, RequirementMeta] = Field(default_factory=dict)

    def meta(self, requirement_id: str) -> RequirementMeta:
        try:
            return self.requirements[requirement_id]
        except KeyError:
            raise RequirementNotFoundError(requirement_id) from None


class Requirement(_Schema):
    """Requirement content parsed from a `requirements/*.md` file.

    `depends_on` mirrors the index for human readers only; the index always wins.
    """

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    depends_on: Optional[list[str]] = Field(default=None, alias="dependsOn")
    files: RequirementFiles = Field(default_factory=RequirementFiles)
    acceptance: list[str] = Field(min_length=1)
    body: str = Field(default="", exclude=True)

    def frontmatter(self) -> dict[str, Any]:
        return self.to_dict()


@dataclass
class ProjectGraph:
    """Index, overview, and requirement content loaded together."""

    index: GraphIndex
    overview: str
    requirements: dict[str, Requirement] = field(default_factory=dict)


@dataclass
class ValidationIssue:
    """Structural problem found by graph validation."""

    type: str  # cycle | dangling_dep | missing_file | orphan_requirement | unknown_group | duplicate_id | schema_error | file_conflict
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "context": dict(self.context)}


@dataclass
class GroupStatus:
    total: int = 0
    complete: int = 0
    in_progress: int = 0
    pending: int = 0
    discovered: int = 0
    rejected: int = 0
    is_complete: bool = True


class GraphError(Exception):
    """Base error for graph store and query failures."""


class GraphSchemaError(GraphError):
    """A graph document failed to parse or did not match its schema."""

    def __init__(self, path: Any, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"{path}: {detail}")


class GraphExistsError(GraphError):
    pass


class RequirementNotFoundError(GraphError):
    def __init__(self, requirement_id: str) -> None:
        self.requirement_id = requirement_id
        super().__init__(f"Requirement not found in index: {requirement_id}")


class DuplicateRequirementError(GraphError):
    def __init__(self, requirement_id: str, detail: str = "") -> None:
        self.requirement_id = requirement_id
        super().__init__(detail or f"Requirement already exists: {requirement_id}")
