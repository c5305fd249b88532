"""ExecutionController: the public control surface for migration runs.

start/cancel/status plus the queue-level pause/resume/stats, and the
history/purge housekeeping operations. The controller never runs stage
handlers; it plans, enqueues the first stage group and reads the Stage
Ledger joined with live queue state.
"""

from collections.abc import Sequence

import structlog

from migraflow.contracts.catalog import ProjectCatalog
from migraflow.contracts.enums import ExecutionStatus, JobState, StageStatus
from migraflow.contracts.errors import CANCELLED_BY_USER, NotFoundError
from migraflow.contracts.models import (
    CancelResult,
    Execution,
    ExecutionStatusView,
    Job,
    JobView,
    QueueStatsView,
    StageRecord,
    StageView,
    StartResult,
)
from migraflow.core._helpers import generate_id
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.config import MigraflowSettings, snapshot_pipeline
from migraflow.core.correlation import CorrelationStore
from migraflow.core.database import MigraflowDB
from migraflow.core.executions import ExecutionStore
from migraflow.core.ledger import StageLedger
from migraflow.core.retention import PurgeResult, RetentionManager
from migraflow.engine.planning import first_group, ledger_rows, plan_stages, stage_jobs_for, validate_project
from migraflow.engine.queue import JobQueue

slog = structlog.get_logger(__name__)

_ACTIVE_JOB_STATES = frozenset({JobState.ACTIVE, JobState.DELAYED})


def progress_percent(completed: int, total: int) -> int:
    """Completed share of all stages, rounded half up to a whole percent."""
    if total <= 0:
        return 0
    return (completed * 200 + total) // (total * 2)


def aggregate_status(rows: Sequence[StageRecord], jobs: dict[str, Job] | None = None) -> ExecutionStatus:
    """Worst-case aggregation of stage statuses into one execution status.

    failed if any stage failed; completed once every stage is completed or
    skipped; running if any stage is running (or its job is active or
    waiting out a retry backoff); otherwise pending.
    """
    jobs = jobs or {}
    if any(row.status is StageStatus.FAILED for row in rows):
        return ExecutionStatus.FAILED
    if rows and all(row.status in (StageStatus.COMPLETED, StageStatus.SKIPPED) for row in rows):
        return ExecutionStatus.COMPLETED
    for row in rows:
        job = jobs.get(row.job_id)
        if row.status is StageStatus.RUNNING or (job is not None and job.state in _ACTIVE_JOB_STATES):
            return ExecutionStatus.RUNNING
    if any(row.status.is_terminal for row in rows):
        # Between groups: the previous group finished, the next is queued.
        return ExecutionStatus.RUNNING
    return ExecutionStatus.PENDING


def _most_specific_error(rows: Sequence[StageRecord], jobs: dict[str, Job]) -> str | None:
    """First failed stage's message, preferring a root cause over cancellation."""
    failed = [row for row in rows if row.status is StageStatus.FAILED and row.error_message]
    for row in failed:
        if row.error_message != CANCELLED_BY_USER:
            return row.error_message
    if failed:
        return failed[0].error_message
    for row in rows:
        job = jobs.get(row.job_id)
        if job is not None and job.failed_reason:
            return job.failed_reason
    return None


def _job_view(job: Job | None) -> JobView | None:
    if job is None:
        return None
    return JobView(
        id=job.job_id,
        state=job.state,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        failed_reason=job.failed_reason,
        processed_on=job.processed_on,
        finished_on=job.finished_on,
    )


class ExecutionController:
    """Starts, observes and cancels executions.

    Example:
        controller = ExecutionController(db=db, queue=queue, catalog=catalog, settings=settings)
        started = controller.start("crm")
        view = controller.status(started.execution_id)
    """

    def __init__(
        self,
        *,
        db: MigraflowDB,
        queue: JobQueue,
        catalog: ProjectCatalog,
        settings: MigraflowSettings,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self._queue = queue
        self._catalog = catalog
        self._settings = settings
        self._clock = clock
        self._executions = ExecutionStore(db, clock=clock)
        self._ledger = StageLedger(db, clock=clock)
        self._correlations = CorrelationStore(db, clock=clock)
        self._retention = RetentionManager(db, clock=clock)

    # === Trigger ===

    def start(self, project_id: str) -> StartResult:
        """Plan and start a new execution of a project.

        Raises:
            NotFoundError: Unknown project, or a project without active table mappings
            ValidationError: Project lacks a source or target connection
        """
        project = validate_project(self._catalog.get_project(project_id), project_id)
        planned = plan_stages(project)
        config = snapshot_pipeline(self._settings)
        execution = Execution(
            execution_id=generate_id(),
            project_id=project_id,
            status=ExecutionStatus.PENDING,
            error_handling=self._settings.pipeline.error_handling,
            config=config,
            created_at=self._clock.now(),
        )
        rows = ledger_rows(execution.execution_id, project_id, planned)
        self._executions.create(execution, rows)

        job_ids = [self._queue.enqueue(stage_job) for stage_job in stage_jobs_for(execution, first_group(rows))]
        slog.info(
            "execution_started",
            execution_id=execution.execution_id,
            project_id=project_id,
            stage_count=len(rows),
            job_ids=job_ids,
        )
        return StartResult(execution_id=execution.execution_id, job_ids=job_ids)

    # === Status ===

    def status(self, execution_id: str) -> ExecutionStatusView:
        """Ledger rows joined with live job state, aggregated into one view.

        Raises:
            NotFoundError: No stage rows exist for the execution
        """
        rows = self._ledger.list_for_execution(execution_id)
        if not rows:
            raise NotFoundError(f"Execution not found: {execution_id}")
        jobs = {job.job_id: job for job in self._queue.jobs_for_execution(execution_id)}
        execution = self._executions.get(execution_id)

        status = aggregate_status(rows, jobs)
        if execution is not None and execution.status is ExecutionStatus.CANCELLED:
            status = ExecutionStatus.CANCELLED

        completed = sum(1 for row in rows if row.status is StageStatus.COMPLETED)
        failed = sum(1 for row in rows if row.status is StageStatus.FAILED)
        stages = [
            StageView(
                stage_id=row.stage_id,
                stage_name=row.stage_name,
                title=row.title,
                table_name=row.table_name,
                status=row.status,
                start_time=row.start_time,
                end_time=row.end_time,
                duration_ms=row.duration_ms,
                records_processed=row.records_processed,
                records_failed=row.records_failed,
                error_message=row.error_message,
                metadata=row.metadata,
                job=_job_view(jobs.get(row.job_id)),
            )
            for row in rows
        ]
        start_times = [row.start_time for row in rows if row.start_time is not None]
        end_times = [row.end_time for row in rows if row.end_time is not None]
        return ExecutionStatusView(
            execution_id=execution_id,
            status=status,
            progress=progress_percent(completed, len(rows)),
            total_stages=len(rows),
            completed_stages=completed,
            failed_stages=failed,
            total_records_processed=sum(row.records_processed for row in rows),
            total_records_failed=sum(row.records_failed for row in rows),
            stages=stages,
            error=_most_specific_error(rows, jobs) if status in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED) else None,
            start_time=min(start_times) if start_times else None,
            end_time=max(end_times) if status.is_terminal and end_times else None,
        )

    # === Control ===

    def cancel(self, execution_id: str) -> CancelResult:
        """Cancel every pending or running stage of an execution.

        Open ledger rows become failed "Cancelled by user"; their jobs are
        withdrawn (waiting/delayed) or asked to stop at the next checkpoint
        (active). Completed rows are untouched. Idempotent: a second call
        cancels nothing.

        Raises:
            NotFoundError: No stage rows exist for the execution
        """
        if not self._ledger.list_for_execution(execution_id):
            raise NotFoundError(f"Execution not found: {execution_id}")
        cancelled = self._ledger.cancel_open(execution_id, CANCELLED_BY_USER)
        outcomes = {row.stage_id: self._queue.cancel(row.job_id).value for row in cancelled}
        finished = self._executions.finish(execution_id, ExecutionStatus.CANCELLED)
        slog.info(
            "execution_cancelled",
            execution_id=execution_id,
            cancelled_count=len(cancelled),
            job_outcomes=outcomes,
            status_changed=finished,
        )
        return CancelResult(execution_id=execution_id, cancelled_count=len(cancelled))

    def pause(self) -> None:
        self._queue.pause()

    def resume(self) -> None:
        self._queue.resume()

    def queue_stats(self) -> QueueStatsView:
        return QueueStatsView(stats=self._queue.stats(), timestamp=self._clock.now())

    # === Housekeeping ===

    def history(self, project_id: str | None = None, limit: int = 20) -> list[Execution]:
        """Most recent executions first, optionally for one project."""
        return self._executions.list_recent(project_id=project_id, limit=limit)

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return execution

    def purge(self, execution_id: str) -> PurgeResult:
        """Delete a terminal execution with its stages, jobs and correlations.

        Raises:
            NotFoundError: Unknown execution
            ValidationError: Execution is still pending or running
        """
        return self._retention.purge_execution(execution_id)

    def purge_expired(self, retention_days: int | None = None) -> PurgeResult:
        days = retention_days if retention_days is not None else self._settings.retention.retention_days
        return self._retention.purge_expired(days)

    def correlation_stats(self, execution_id: str) -> dict[str, object]:
        return self._correlations.stats_for(execution_id).to_dict()
