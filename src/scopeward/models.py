from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

STATE_DOCUMENT_VERSION = "1.0"


def utcnow() -> datetime:
    return datetime.now(UTC)


class ScopeKind(str, Enum):
    APPLICATION = "application"
    STAGE = "stage"
    NESTED = "nested"


class ScopeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    FINALIZING = "finalizing"
    DESTROYED = "destroyed"


class Strategy(str, Enum):
    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"


class Environment(str, Enum):
    PRODUCTION = "production"
    PREVIEW = "preview"
    DEVELOPMENT = "development"
    UNKNOWN = "unknown"


class CostEstimate(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResourceRecord(BaseModel):
    """A single resource owned by exactly one scope."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class ScopeMetadata(BaseModel):
    """Advisory metadata. Never consulted for correctness."""

    environment: Environment = Environment.UNKNOWN
    is_ephemeral: bool = False
    estimated_cost: CostEstimate = CostEstimate.LOW
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


class ScopeRecord(BaseModel):
    """Persisted document for one scope path."""

    version: str = STATE_DOCUMENT_VERSION
    path: str
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    nested_scope_names: set[str] = Field(default_factory=set)
    metadata: ScopeMetadata = Field(default_factory=ScopeMetadata)

    @field_serializer("nested_scope_names")
    def _serialize_nested(self, value: set[str]) -> list[str]:
        return sorted(value)


class LockInfo(BaseModel):
    """Holder metadata written into a file lock sidecar."""

    pid: int
    hostname: str
    acquired_at: datetime = Field(default_factory=utcnow)
    owner: str | None = None


class ScopeStats(BaseModel):
    total_resources: int
    nested_scopes: int
    state_size: int
    last_updated: datetime | None = None


class ScopeSnapshot(BaseModel):
    """Read-only view of a scope used by inspection tooling."""

    model_config = ConfigDict(use_enum_values=True)

    scope_path: str
    kind: ScopeKind
    state: ScopeState
    total_resources: int = 0
    nested_scopes: list[str] = Field(default_factory=list)
    state_size: int = 0
    fingerprint: str | None = None
    created_at: datetime | None = None
    last_updated: datetime | None = None
    is_locked: bool = False


class FinalizationReport(BaseModel):
    """Outcome of finalizing (or pruning) one scope and its descendants."""

    model_config = ConfigDict(use_enum_values=True)

    scope_path: str
    strategy: Strategy = Strategy.CONSERVATIVE
    resources_deleted: int = 0
    resources_failed: int = 0
    nested_scopes_processed: int = 0
    duration: float = 0.0
    dry_run: bool = False
    state_removed: bool = False
    errors: list[str] = Field(default_factory=list)
    nested_reports: list["FinalizationReport"] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.resources_failed == 0 and not self.errors


class FinalizationSummary(BaseModel):
    """Totals across every stage of an application."""

    app_name: str
    dry_run: bool = False
    stages_processed: int = 0
    resources_deleted: int = 0
    resources_failed: int = 0
    nested_scopes_processed: int = 0
    duration: float = 0.0
    errors: list[str] = Field(default_factory=list)
    reports: list[FinalizationReport] = Field(default_factory=list)

    def add(self, report: FinalizationReport) -> None:
        self.reports.append(report)
        self.stages_processed += 1
        self.resources_deleted += report.resources_deleted
        self.resources_failed += report.resources_failed
        self.nested_scopes_processed += report.nested_scopes_processed


class StageSummary(BaseModel):
    """One row of ``scopeward list``."""

    app_name: str
    stage_name: str
    scope_path: str
    total_resources: int = 0
    nested_scopes: list[str] = Field(default_factory=list)
    is_locked: bool = False
    last_updated: datetime | None = None


class NestedScopeView(BaseModel):
    scope_name: str
    scope_path: str
    resource_count: int = 0
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    nested_scopes: list["NestedScopeView"] = Field(default_factory=list)


class ScopeValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class StageInspection(BaseModel):
    """Everything ``scopeward inspect`` reports about one stage."""

    snapshot: ScopeSnapshot
    metadata: ScopeMetadata
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    nested_scopes: list[NestedScopeView] = Field(default_factory=list)
    orphaned_resources: list[str] = Field(default_factory=list)
    validation: ScopeValidation
    recommendations: list[str] = Field(default_factory=list)
