"""Domain records for executions, stages, jobs and record correlations.

These are strict contracts - all enum fields use proper enum types.
The repository layer handles string->enum conversion for DB reads.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from migraflow.contracts.enums import (
    ErrorHandlingMode,
    ExecutionStatus,
    JobState,
    StageName,
    StageStatus,
)


def stage_id_for(stage: StageName, table: str | None = None) -> str:
    """Build the stage identifier used by the ledger and the job identity.

    Whole-stage units use the bare stage name ("extract"). Table-level load
    units append the target table ("load-facts:orders").
    """
    if table is None:
        return stage.value
    return f"{stage.value}:{table}"


def job_id_for(execution_id: str, stage_id: str) -> str:
    """Deterministic job identity: ``<executionId>-<stageId>``."""
    return f"{execution_id}-{stage_id}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Execution:
    """One end-to-end migration run."""

    execution_id: str
    project_id: str
    status: ExecutionStatus
    error_handling: ErrorHandlingMode
    config: dict[str, Any]
    created_at: datetime
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass
class StageRecord:
    """Ledger row for one stage (or one table unit of a load stage)."""

    execution_id: str
    project_id: str
    stage_id: str
    stage_name: StageName
    stage_order: int
    status: StageStatus
    title: str
    table_name: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    records_processed: int = 0
    records_failed: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    position: int = 0

    @property
    def job_id(self) -> str:
        return job_id_for(self.execution_id, self.stage_id)


@dataclass(frozen=True)
class StageJob:
    """Request to enqueue one stage unit."""

    execution_id: str
    project_id: str
    stage_name: StageName
    stage_id: str
    table_name: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    group_concurrency: int | None = None

    @property
    def job_id(self) -> str:
        return job_id_for(self.execution_id, self.stage_id)

    @property
    def payload(self) -> dict[str, Any]:
        return {
            "stage": self.stage_name.value,
            "stage_id": self.stage_id,
            "table": self.table_name,
            "config": self.config,
            "metadata": self.metadata,
        }


@dataclass
class Job:
    """Queue-level unit of work as stored in the jobs table."""

    job_id: str
    execution_id: str
    project_id: str
    stage_name: StageName
    stage_id: str
    state: JobState
    priority: int
    attempts_made: int
    max_attempts: int
    payload: dict[str, Any]
    created_at: datetime
    table_name: str | None = None
    group_concurrency: int | None = None
    available_at: datetime | None = None
    claim_token: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    cancel_requested: bool = False
    failed_reason: str | None = None
    error_kind: str | None = None
    processed_on: datetime | None = None
    finished_on: datetime | None = None
    result: dict[str, Any] | None = None

    @property
    def config(self) -> dict[str, Any]:
        config: dict[str, Any] = self.payload["config"]
        return config

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently claimed."""
        return self.attempts_made + 1


@dataclass(frozen=True)
class CorrelationEntry:
    """Bridges a record identity from the source to the target system."""

    execution_id: str
    project_id: str
    table_name: str
    source_id: str
    target_id: str
    created_at: datetime
    external_doc_id: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CorrelationStats:
    total: int
    by_table: dict[str, int]
    with_external_doc: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StageResult:
    """Outcome of one stage handler invocation.

    Handlers return this on success. A handler may also return
    ``success=False`` for failures it detected itself; those are treated as
    permanent unless ``retryable`` is set.
    """

    success: bool
    records_processed: int = 0
    records_failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    retryable: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, records_processed: int = 0, records_failed: int = 0, **metadata: Any) -> StageResult:
        return cls(success=True, records_processed=records_processed, records_failed=records_failed, metadata=metadata)

    @classmethod
    def failure(cls, error: str, *, retryable: bool = False, duration_ms: int = 0) -> StageResult:
        return cls(success=False, error=error, retryable=retryable, duration_ms=duration_ms)


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool = False

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "total": self.total}


@dataclass(frozen=True)
class JobView:
    """Live queue state attached to a stage in the status view."""

    id: str
    state: JobState
    attempts_made: int
    max_attempts: int
    failed_reason: str | None
    processed_on: datetime | None
    finished_on: datetime | None


@dataclass(frozen=True)
class StageView:
    stage_id: str
    stage_name: StageName
    title: str
    table_name: str | None
    status: StageStatus
    start_time: datetime | None
    end_time: datetime | None
    duration_ms: int | None
    records_processed: int
    records_failed: int
    error_message: str | None
    metadata: dict[str, Any]
    job: JobView | None


@dataclass(frozen=True)
class ExecutionStatusView:
    """Aggregated progress of one execution."""

    execution_id: str
    status: ExecutionStatus
    progress: int
    total_stages: int
    completed_stages: int
    failed_stages: int
    total_records_processed: int
    total_records_failed: int
    stages: list[StageView]
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = _jsonable(asdict(self))
        return result


@dataclass(frozen=True)
class StartResult:
    execution_id: str
    job_ids: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CancelResult:
    execution_id: str
    cancelled_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QueueStatsView:
    stats: QueueStats
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {**self.stats.to_dict(), "timestamp": self.timestamp.isoformat()}


@dataclass(frozen=True)
class DrainReport:
    """Summary of one periodic drain invocation."""

    processed: int
    failed: int
    remaining: int
    requeued_stalled: int = 0
    recovered: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
