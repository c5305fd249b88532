"""Shared contracts: enums, records, errors and protocols used across subsystems.

Contracts depend on nothing else inside migraflow, so any module can import
them without creating cycles.
"""

from migraflow.contracts.catalog import ProjectCatalog, ProjectDefinition, TableMapping
from migraflow.contracts.enums import (
    STAGE_ORDER,
    STAGE_TITLES,
    TERMINAL_EXECUTION_STATUSES,
    BackoffType,
    CancelOutcome,
    ErrorHandlingMode,
    ErrorKind,
    ExecutionStatus,
    JobState,
    LoadStrategy,
    StageName,
    StageStatus,
    TableKind,
)
from migraflow.contracts.errors import (
    CANCELLED_BY_USER,
    ClaimLostError,
    ExecutionCancelled,
    HandlerNotFoundError,
    MigraflowError,
    NotFoundError,
    PermanentError,
    StageErrorPayload,
    TransientError,
    UnauthorizedError,
    ValidationError,
    classify_error,
    describe_error,
)
from migraflow.contracts.models import (
    CancelResult,
    CorrelationEntry,
    CorrelationStats,
    DrainReport,
    Execution,
    ExecutionStatusView,
    Job,
    JobView,
    QueueStats,
    QueueStatsView,
    StageJob,
    StageRecord,
    StageResult,
    StageView,
    StartResult,
    job_id_for,
    stage_id_for,
)

__all__ = [
    "CANCELLED_BY_USER",
    "STAGE_ORDER",
    "STAGE_TITLES",
    "TERMINAL_EXECUTION_STATUSES",
    "BackoffType",
    "CancelOutcome",
    "CancelResult",
    "ClaimLostError",
    "CorrelationEntry",
    "CorrelationStats",
    "DrainReport",
    "ErrorHandlingMode",
    "ErrorKind",
    "Execution",
    "ExecutionCancelled",
    "ExecutionStatus",
    "ExecutionStatusView",
    "HandlerNotFoundError",
    "Job",
    "JobState",
    "JobView",
    "LoadStrategy",
    "MigraflowError",
    "NotFoundError",
    "PermanentError",
    "ProjectCatalog",
    "ProjectDefinition",
    "QueueStats",
    "QueueStatsView",
    "StageErrorPayload",
    "StageJob",
    "StageName",
    "StageRecord",
    "StageResult",
    "StageStatus",
    "StageView",
    "StartResult",
    "TableKind",
    "TableMapping",
    "TransientError",
    "UnauthorizedError",
    "ValidationError",
    "classify_error",
    "describe_error",
    "job_id_for",
    "stage_id_for",
]
