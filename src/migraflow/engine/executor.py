"""StageExecutor: runs one claimed job and projects its outcome.

For each job the executor:

1. Moves the ledger row to running (a retry re-enters running).
2. Invokes the stage handler with a StageContext.
3. Classifies any failure; only transient failures consume a retry.
4. Reports the attempt to the queue (the source of truth).
5. Projects the queue's decision into the ledger and, once the job's stage
   group is terminal, enqueues the next group or finishes the execution.

Ledger writes always follow the queue transition, never precede it.
"""

from dataclasses import dataclass, replace

import structlog

from migraflow.contracts.enums import ErrorHandlingMode, ErrorKind, ExecutionStatus, JobState, StageName, StageStatus
from migraflow.contracts.errors import (
    CANCELLED_BY_USER,
    PermanentError,
    StageErrorPayload,
    classify_error,
    describe_error,
)
from migraflow.contracts.models import Execution, Job, StageRecord, StageResult
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.correlation import CorrelationStore
from migraflow.core.executions import ExecutionStore
from migraflow.core.ledger import StageLedger
from migraflow.engine.guard import JobClaimGuard
from migraflow.engine.planning import first_group, stage_jobs_for, table_from_metadata
from migraflow.engine.queue import JobQueue
from migraflow.plugins.context import StageContext
from migraflow.plugins.manager import PluginManager

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _Attempt:
    """Outcome of invoking a handler once."""

    result: StageResult
    kind: ErrorKind | None = None
    error_type: str | None = None


class StageExecutor:
    """Executes claimed jobs through registered stage handlers."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        ledger: StageLedger,
        executions: ExecutionStore,
        correlations: CorrelationStore,
        plugins: PluginManager,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self._queue = queue
        self._ledger = ledger
        self._executions = executions
        self._correlations = correlations
        self._plugins = plugins
        self._clock = clock

    def run(self, job: Job) -> StageResult:
        """Run one attempt of a claimed job.

        Handler failures never raise out of this method; they are returned
        as ``StageResult(success=False)`` after being reported to the queue.
        Infrastructure failures (database unavailable) propagate after the
        claim guard reported the attempt.
        """
        log = slog.bind(
            execution_id=job.execution_id,
            job_id=job.job_id,
            stage_id=job.stage_id,
            attempt=job.attempt,
        )
        with JobClaimGuard(self._queue, self._ledger, job) as guard:
            execution = self._executions.get(job.execution_id)
            if execution is None:
                message = f"Execution not found: {job.execution_id}"
                guard.fail(message, ErrorKind.NOT_FOUND)
                log.error("job_orphaned")
                return StageResult.failure(message)

            if execution.status.is_terminal or job.cancel_requested:
                guard.fail(CANCELLED_BY_USER, ErrorKind.CANCELLED)
                self._ledger.fail(job.execution_id, job.stage_id, CANCELLED_BY_USER)
                log.info("job_dropped_execution_finished", execution_status=execution.status.value)
                return StageResult.failure(CANCELLED_BY_USER)

            if not self._ledger.mark_running(job.execution_id, job.stage_id):
                row = self._ledger.get(job.execution_id, job.stage_id)
                reason = row.error_message if row is not None and row.error_message else "Stage is already finished"
                guard.fail(reason, ErrorKind.CANCELLED)
                log.info("job_dropped_stage_finished", reason=reason)
                return StageResult.failure(reason)
            self._executions.mark_running(job.execution_id)

            attempt = self._invoke(job, log)
            result = attempt.result
            if result.success:
                state = guard.complete(result)
            else:
                assert attempt.kind is not None
                state = guard.fail(result.error or "Stage failed", attempt.kind)

            if state is None:
                # Claim was released by stall recovery; another consumer owns the job now.
                return result
            self._project(job, execution, state, attempt, log)
            return result

    # === Handler invocation ===

    def _invoke(self, job: Job, log: structlog.stdlib.BoundLogger) -> _Attempt:
        start = self._clock.monotonic()
        try:
            handler = self._plugins.get_handler(job.stage_name)
            context = self._build_context(job, log)
            context.checkpoint()
            log.info("stage_started", handler=handler.name)
            result = handler.run(context)
            if not isinstance(result, StageResult):
                raise PermanentError(f"Handler '{handler.name}' returned {type(result).__name__}, expected StageResult")
        except Exception as error:
            kind = classify_error(error)
            duration_ms = int((self._clock.monotonic() - start) * 1000)
            log.warning("stage_attempt_failed", error=describe_error(error), kind=kind.value)
            return _Attempt(
                result=StageResult.failure(describe_error(error), retryable=kind.is_retryable, duration_ms=duration_ms),
                kind=kind,
                error_type=type(error).__name__,
            )

        if not result.duration_ms:
            result = replace(result, duration_ms=int((self._clock.monotonic() - start) * 1000))
        if result.success:
            return _Attempt(result=result)
        kind = ErrorKind.TRANSIENT if result.retryable else ErrorKind.PERMANENT
        if not result.error:
            result = replace(result, error=f"Stage {job.stage_id} reported failure")
        log.warning("stage_attempt_failed", error=result.error, kind=kind.value)
        return _Attempt(result=result, kind=kind, error_type="StageResult")

    def _build_context(self, job: Job, log: structlog.stdlib.BoundLogger) -> StageContext:
        correlations = None
        if job.stage_name.uses_correlations:
            correlations = self._correlations.bind(job.execution_id, job.project_id)
        return StageContext(
            execution_id=job.execution_id,
            project_id=job.project_id,
            stage=job.stage_name,
            stage_id=job.stage_id,
            job_id=job.job_id,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            config=dict(job.config),
            table=table_from_metadata(job.payload.get("metadata", {})),
            correlations=correlations,
            log=log,
            cancel_probe=lambda: self._queue.is_cancel_requested(job.job_id),
            heartbeat=lambda: self._queue.heartbeat(job),
        )

    # === Outcome projection ===

    def _project(
        self,
        job: Job,
        execution: Execution,
        state: JobState,
        attempt: _Attempt,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        result = attempt.result
        if state is JobState.DELAYED:
            payload: StageErrorPayload = {
                "kind": (attempt.kind or ErrorKind.TRANSIENT).value,
                "message": result.error or "",
                "type": attempt.error_type or "Exception",
                "attempt": job.attempt,
            }
            self._ledger.record_retry(job.execution_id, job.stage_id, payload)
            log.warning("stage_retry_scheduled", error=result.error, attempts_made=job.attempt, max_attempts=job.max_attempts)
            return

        if state is JobState.COMPLETED:
            if self._ledger.complete(job.execution_id, job.stage_id, result):
                self._executions.add_counts(job.execution_id, processed=result.records_processed, failed=result.records_failed)
            log.info(
                "stage_completed",
                records_processed=result.records_processed,
                records_failed=result.records_failed,
                duration_ms=result.duration_ms,
            )
            self.advance(job.execution_id, job.stage_name)
            return

        if self._was_cancelled(job):
            # Cancelled while running: terminal, never schedules downstream work.
            self._ledger.fail(job.execution_id, job.stage_id, CANCELLED_BY_USER)
            log.info("stage_cancelled")
            return
        self._handle_failure(job, execution, result, log)

    def _was_cancelled(self, job: Job) -> bool:
        """True when the user cancelled this job or its execution.

        A handler raising ExecutionCancelled on its own is an ordinary
        failure and still goes through the error handling mode.
        """
        finished = self._queue.get_job(job.job_id)
        if finished is None or finished.failed_reason != CANCELLED_BY_USER:
            return False
        if finished.cancel_requested:
            return True
        current = self._executions.get(job.execution_id)
        return current is None or current.status.is_terminal

    def _handle_failure(
        self,
        job: Job,
        execution: Execution,
        result: StageResult,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        message = result.error or "Stage failed"
        mode = execution.error_handling

        if mode is ErrorHandlingMode.SKIP_AND_LOG and job.stage_name.is_table_level:
            if self._ledger.skip(job.execution_id, job.stage_id, f"Skipped after error: {message}"):
                self._executions.add_counts(job.execution_id, processed=result.records_processed, failed=result.records_failed)
            log.warning("table_stage_skipped", error=message)
            self.advance(job.execution_id, job.stage_name)
            return

        if self._ledger.fail(job.execution_id, job.stage_id, message, records_failed=result.records_failed):
            self._executions.add_counts(job.execution_id, processed=result.records_processed, failed=result.records_failed)
        log.error("stage_failed", error=message, attempts_made=job.attempt, error_handling=mode.value)

        if mode is ErrorHandlingMode.FAIL_FAST:
            self._stop_after_failure(job)
            return
        self.advance(job.execution_id, job.stage_name)

    def _stop_after_failure(self, job: Job) -> None:
        """fail-fast: withdraw unclaimed siblings and skip everything downstream.

        Siblings already running finish their attempt; the execution is
        finished once the last of them reports.
        """
        rows = self._ledger.list_for_execution(job.execution_id)
        reason = f"Skipped: stage {job.stage_id} failed"
        for sibling in rows:
            if sibling.stage_name is not job.stage_name or sibling.stage_id == job.stage_id or sibling.status.is_terminal:
                continue
            if self._queue.withdraw(sibling.job_id, reason) or self._queue.get_job(sibling.job_id) is None:
                self._ledger.skip(job.execution_id, sibling.stage_id, reason)
        self._skip_downstream(job.execution_id, rows, after=job.stage_name, reason=reason)
        self._finish_if_done(job.execution_id)

    def _skip_downstream(self, execution_id: str, rows: list[StageRecord], *, after: StageName, reason: str) -> None:
        downstream = [row.stage_id for row in rows if row.stage_order > after.order and row.status is StageStatus.PENDING]
        if downstream:
            self._ledger.skip_pending(execution_id, downstream, reason)

    # === Group advancement ===

    def advance(self, execution_id: str, stage: StageName) -> None:
        """Enqueue the next stage group once every row of ``stage`` is terminal.

        Safe to call concurrently from the last jobs of a group: enqueue is
        idempotent and finishing the execution is a conditional update.
        """
        rows = self._ledger.list_for_execution(execution_id)
        if any(not row.status.is_terminal for row in rows if row.stage_name is stage):
            return
        execution = self._executions.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return

        if execution.error_handling is ErrorHandlingMode.FAIL_FAST and any(row.status is StageStatus.FAILED for row in rows):
            self._skip_downstream(execution_id, rows, after=stage, reason="Skipped: an upstream stage failed")
            self._finish_if_done(execution_id)
            return

        later = [row for row in rows if row.stage_order > stage.order and row.status is StageStatus.PENDING]
        if not later:
            self._finish_if_done(execution_id)
            return
        next_stage = min(later, key=lambda row: row.stage_order).stage_name
        group = [row for row in later if row.stage_name is next_stage]
        job_ids = [self._queue.enqueue(stage_job) for stage_job in stage_jobs_for(execution, group)]
        slog.info("stage_group_enqueued", execution_id=execution_id, stage=next_stage.value, job_count=len(job_ids))

    def _finish_if_done(self, execution_id: str) -> None:
        rows = self._ledger.list_for_execution(execution_id)
        if any(not row.status.is_terminal for row in rows):
            return
        status = ExecutionStatus.FAILED if any(row.status is StageStatus.FAILED for row in rows) else ExecutionStatus.COMPLETED
        if self._executions.finish(execution_id, status):
            execution = self._executions.get(execution_id)
            slog.info(
                "execution_finished",
                execution_id=execution_id,
                status=status.value,
                processed_records=execution.processed_records if execution else None,
                failed_records=execution.failed_records if execution else None,
            )

    # === Reconciliation ===

    def recover_orphaned(self) -> int:
        """Re-drive executions that stopped moving after a consumer crash.

        A consumer can die after the queue recorded a job's outcome but before
        the ledger saw it, or before the next stage group was enqueued. Such
        an execution stays non-terminal with nothing left in the queue. Every
        step replayed here is a conditional write, so racing a live consumer
        that is about to do the same is harmless.

        Returns:
            Number of executions that were reconciled
        """
        recovered = 0
        for execution in self._executions.list_idle_unfinished():
            log = slog.bind(execution_id=execution.execution_id)
            self._reconcile(execution, log)
            recovered += 1
            log.warning("execution_reconciled")
        return recovered

    def _reconcile(self, execution: Execution, log: structlog.stdlib.BoundLogger) -> None:
        execution_id = execution.execution_id
        rows = self._ledger.list_for_execution(execution_id)
        jobs = {job.job_id: job for job in self._queue.jobs_for_execution(execution_id)}
        if not jobs:
            # Start recorded the plan but never enqueued the first group.
            for stage_job in stage_jobs_for(execution, first_group(rows)):
                self._queue.enqueue(stage_job)
            return

        for row in rows:
            job = jobs.get(row.job_id)
            if row.status.is_terminal or job is None or not job.state.is_terminal:
                continue
            self._replay_outcome(job, execution, log.bind(job_id=job.job_id, stage_id=job.stage_id))

        rows = self._ledger.list_for_execution(execution_id)
        settled: StageName | None = None
        for stage in sorted({row.stage_name for row in rows}, key=lambda name: name.order):
            if any(not row.status.is_terminal for row in rows if row.stage_name is stage):
                break
            settled = stage
        if settled is not None:
            self.advance(execution_id, settled)
        self._finish_if_done(execution_id)

    def _replay_outcome(self, job: Job, execution: Execution, log: structlog.stdlib.BoundLogger) -> None:
        """Project a finished job the ledger never heard about."""
        if job.state is JobState.COMPLETED:
            stored = job.result or {}
            result = StageResult(
                success=True,
                records_processed=int(stored.get("records_processed", 0)),
                records_failed=int(stored.get("records_failed", 0)),
                duration_ms=int(stored.get("duration_ms", 0)),
                metadata=dict(stored.get("metadata", {})),
            )
            self._ledger.mark_running(job.execution_id, job.stage_id)
            if self._ledger.complete(job.execution_id, job.stage_id, result):
                self._executions.add_counts(job.execution_id, processed=result.records_processed, failed=result.records_failed)
            log.info("stage_completed_on_recovery", records_processed=result.records_processed)
            return

        reason = job.failed_reason or "Stage failed"
        if reason == CANCELLED_BY_USER:
            self._ledger.fail(job.execution_id, job.stage_id, CANCELLED_BY_USER)
            return
        self._handle_failure(job, execution, StageResult.failure(reason), log)
