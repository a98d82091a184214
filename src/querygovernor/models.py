"""
Pydantic models shared across the governor.

- Request options: ExecuteOptions
- Plan analysis output: PlanAnalysis
- Index advice: IndexSuggestion, IndexApplyResult
- Observability views: PoolSnapshot, StatsSnapshot, HealthReport, DatabaseStats
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanType(str, Enum):
    """Scan strategies recognised in execution plans."""

    SEQUENTIAL = "sequential"
    INDEX = "index"
    BITMAP = "bitmap"


class SuggestionKind(str, Enum):
    """Shape of a proposed index."""

    SINGLE_COLUMN = "single-column"
    COMPOSITE = "composite"


class IndexPriority(str, Enum):
    """Urgency of an index suggestion."""

    HIGH = "high"
    CRITICAL = "critical"


class ApplyStatus(str, Enum):
    """Outcome of issuing a suggested DDL statement."""

    CREATED = "created"
    EXISTS = "exists"
    FAILED = "failed"


class ExecuteOptions(BaseModel):
    """Per-call options for QueryGovernor.execute."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: float | None = Field(
        default=None,
        description="Client-side deadline; defaults to the configured query timeout",
    )
    skip_cache: bool = Field(
        default=False,
        description="Bypass the result cache for both lookup and store",
    )
    cache_ttl_seconds: float | None = Field(
        default=None,
        description="TTL for this result; defaults to the configured cache TTL",
    )


class PlanAnalysis(BaseModel):
    """
    Structured metrics extracted from a diagnostic execution plan.

    Cost, time and row values come from the first (root) plan line that
    carries them. ``scan_types`` holds ScanType values as plain strings.
    """

    total_cost: float = 0.0
    startup_cost: float = 0.0
    actual_time: float = 0.0
    row_estimate: int = 0
    scan_types: set[str] = Field(default_factory=set)
    indexes_used: set[str] = Field(default_factory=set)
    warnings: list[str] = Field(default_factory=list)

    planning_time_ms: float | None = None
    execution_time_ms: float | None = None
    tables_scanned: set[str] = Field(default_factory=set)

    @property
    def has_sequential_scan(self) -> bool:
        return ScanType.SEQUENTIAL.value in self.scan_types

    def to_dict(self) -> dict[str, Any]:
        """Serialize with sets rendered as sorted lists."""
        data = self.model_dump()
        for key in ("scan_types", "indexes_used", "tables_scanned"):
            data[key] = sorted(data[key])
        return data


class IndexSuggestion(BaseModel):
    """A concrete index remediation proposed for a slow query."""

    model_config = ConfigDict(frozen=True)

    kind: SuggestionKind
    table: str
    column: str | None = None
    ddl_text: str
    reason: str
    priority: IndexPriority
    estimated_benefit: str
    signature: str | None = Field(
        default=None,
        description="Signature of the slow query that produced the suggestion",
    )
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def index_name(self) -> str | None:
        """Conventional ``<table>_<column>_idx`` name, if single-column."""
        if self.column is None:
            return None
        return f"{self.table}_{self.column}_idx"

    @property
    def is_executable(self) -> bool:
        """True when ddl_text is a real statement rather than advice."""
        return self.kind is SuggestionKind.SINGLE_COLUMN

    def dedupe_key(self) -> tuple[str, str, str | None, str]:
        return (self.kind.value, self.table, self.column, self.ddl_text)


class IndexApplyResult(BaseModel):
    """Per-statement outcome of apply_recommended_indexes."""

    model_config = ConfigDict(frozen=True)

    ddl: str
    status: ApplyStatus
    error: str | None = None


class PoolSnapshot(BaseModel):
    """Read-only view of connection pool occupancy."""

    model_config = ConfigDict(frozen=True)

    total: int
    idle: int
    waiting: int
    max: int

    @property
    def in_use(self) -> int:
        return self.total - self.idle


class StatsSnapshot(BaseModel):
    """Point-in-time view of governor counters for external metrics sinks."""

    model_config = ConfigDict(frozen=True)

    total_queries: int = 0
    slow_queries: int = 0
    avg_query_time: float = 0.0
    cache_hit_rate: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    slow_query_signature_count: int = 0
    suggestion_count: int = 0
    pool: PoolSnapshot | None = None

    signature_count: int = 0
    p95_query_time: float = 0.0
    p99_query_time: float = 0.0
    pending_analyses: int = 0


class HealthReport(BaseModel):
    """Result of QueryGovernor.health_check."""

    status: str
    checks: dict[str, bool]
    stats: StatsSnapshot
    suggestions: list[IndexSuggestion] = Field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"


class DatabaseStats(BaseModel):
    """Catalog-level statistics collected from the backend."""

    size_bytes: int = 0
    table_count: int = 0
    index_count: int = 0
    table_sizes: list[dict[str, Any]] = Field(default_factory=list)
    index_usage: list[dict[str, Any]] = Field(default_factory=list)
    collected_at: datetime = Field(default_factory=_utcnow)
