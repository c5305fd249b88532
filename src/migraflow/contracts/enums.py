"""All status codes, modes, and kinds used across subsystem boundaries.

Values are stored verbatim in the database, so renaming a member is a
schema change.
"""

from enum import StrEnum


class StageName(StrEnum):
    """The fixed phases of a migration execution, in execution order.

    Stored in database (execution_stages.stage_name, jobs.stage_name).
    """

    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD_DIMENSIONS = "load-dimensions"
    LOAD_FACTS = "load-facts"
    VALIDATE = "validate"
    REPORT = "report"

    @property
    def order(self) -> int:
        """1-based position in the pipeline. Also used as queue priority."""
        return STAGE_ORDER.index(self) + 1

    @property
    def is_table_level(self) -> bool:
        """Load stages are planned as one unit per table mapping."""
        return self in (StageName.LOAD_DIMENSIONS, StageName.LOAD_FACTS)

    @property
    def uses_correlations(self) -> bool:
        """Stages that receive a handle to the record correlation store."""
        return self in (StageName.LOAD_DIMENSIONS, StageName.LOAD_FACTS, StageName.VALIDATE, StageName.REPORT)

    def next(self) -> "StageName | None":
        """Return the stage that follows this one, or None for the last stage."""
        position = STAGE_ORDER.index(self)
        if position + 1 >= len(STAGE_ORDER):
            return None
        return STAGE_ORDER[position + 1]


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.EXTRACT,
    StageName.TRANSFORM,
    StageName.LOAD_DIMENSIONS,
    StageName.LOAD_FACTS,
    StageName.VALIDATE,
    StageName.REPORT,
)

STAGE_TITLES: dict[StageName, str] = {
    StageName.EXTRACT: "Extract to Staging",
    StageName.TRANSFORM: "Transform & Cleanse",
    StageName.LOAD_DIMENSIONS: "Load Dimensions",
    StageName.LOAD_FACTS: "Load Facts",
    StageName.VALIDATE: "Validate Data",
    StageName.REPORT: "Generate Report",
}


class StageStatus(StrEnum):
    """Lifecycle of one stage row in the ledger.

    Stored in database (execution_stages.status).
    Transitions only move forward: pending -> running -> terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED)


class JobState(StrEnum):
    """State of a unit of work in the job queue.

    Stored in database (jobs.state).
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class ExecutionStatus(StrEnum):
    """Overall status of a migration execution.

    Stored in database (executions.status). Terminal statuses are immutable.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


TERMINAL_EXECUTION_STATUSES: tuple[ExecutionStatus, ...] = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


class ErrorHandlingMode(StrEnum):
    """How a stage failure affects the rest of the execution.

    Values:
        FAIL_FAST: Stop scheduling downstream stages after a failure
        CONTINUE_ON_ERROR: Run downstream stages; execution still ends failed
        SKIP_AND_LOG: Mark the failing table unit skipped and carry on
    """

    FAIL_FAST = "fail-fast"
    CONTINUE_ON_ERROR = "continue-on-error"
    SKIP_AND_LOG = "skip-and-log"


class ErrorKind(StrEnum):
    """Classification used to decide whether a failure consumes a retry."""

    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
    UNAUTHORIZED = "unauthorized"

    @property
    def is_retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


class BackoffType(StrEnum):
    """Delay growth between retries of a failed job."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class LoadStrategy(StrEnum):
    """How load stages write into target tables.

    Interpreted by load handlers; the engine only passes it through.
    """

    TRUNCATE_LOAD = "truncate-load"
    MERGE = "merge"
    APPEND = "append"


class TableKind(StrEnum):
    """Whether a table mapping loads in the dimension or the fact stage."""

    DIMENSION = "dimension"
    FACT = "fact"

    @property
    def stage(self) -> StageName:
        return StageName.LOAD_DIMENSIONS if self is TableKind.DIMENSION else StageName.LOAD_FACTS


class CancelOutcome(StrEnum):
    """What the queue did with a cancel request."""

    REMOVED = "removed"
    SIGNALLED = "signalled"
    ALREADY_FINISHED = "already_finished"
    NOT_FOUND = "not_found"
