"""JobQueue: durable, ordered, retryable units of work.

The queue is the source of truth for stage execution. Every state change
is a conditional UPDATE, so any number of consumers (a persistent worker,
overlapping drain invocations) can share one database:

- claim:    waiting -> active      WHERE state = 'waiting' AND concurrency allows
- complete: active  -> completed   WHERE claim_token = <token of this claim>
- fail:     active  -> delayed | failed (same claim check)
- heartbeat: active -> active     refresh claimed_at (same claim check)

A consumer whose claim was taken away (stall recovery) gets ``None`` back
from mark_completed/mark_failed and must not project the outcome. Running
jobs heartbeat at every checkpoint, so only jobs whose consumer stopped
responding are considered stalled.

Job identity is ``<executionId>-<stageId>``; enqueueing an existing id is a
no-op, which makes "enqueue the next stage group" safe to race.
"""

from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, func, literal, or_, select, text, update

from migraflow.contracts.enums import CancelOutcome, ErrorKind, JobState
from migraflow.contracts.errors import CANCELLED_BY_USER
from migraflow.contracts.models import Job, QueueStats, StageJob, StageResult
from migraflow.core._database_ops import DatabaseOps
from migraflow.core._helpers import dumps, generate_id
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.config import QueueSettings
from migraflow.core.database import MigraflowDB
from migraflow.core.repositories import JobRepository
from migraflow.core.retry import backoff_delay_ms, run_with_contention_retry
from migraflow.core.schema import jobs_table, queue_control_table

slog = structlog.get_logger(__name__)

_PAUSED_KEY = "paused"
# Arbitrary constant shared by every consumer of one PostgreSQL database.
_CLAIM_LOCK_KEY = 7_366_451_209


class JobQueue:
    """Durable job queue over the ``jobs`` table.

    Example:
        queue = JobQueue(db, settings.queue)
        queue.enqueue(stage_job)
        for job in queue.dequeue_waiting_batch(5, consumer_id="drain-1"):
            ...
            queue.mark_completed(job)
    """

    def __init__(self, db: MigraflowDB, settings: QueueSettings, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._settings = settings
        self._clock = clock
        self._repo = JobRepository()

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    # === Producer side ===

    def enqueue(self, stage_job: StageJob, *, max_attempts: int | None = None) -> str:
        """Add a job unless one with the same identity already exists.

        Priority is the stage's pipeline position, so when several
        executions compete, earlier stages are claimed first.

        Args:
            stage_job: What to run
            max_attempts: Total attempts; defaults to the job config's
                ``retry_attempts`` and then to queue settings

        Returns:
            The deterministic job id
        """
        job_id = stage_job.job_id
        attempts = max_attempts or int(stage_job.config.get("retry_attempts", self._settings.retry_attempts))
        stmt = (
            self._db.insert(jobs_table)
            .values(
                job_id=job_id,
                execution_id=stage_job.execution_id,
                project_id=stage_job.project_id,
                stage_name=stage_job.stage_name.value,
                stage_id=stage_job.stage_id,
                table_name=stage_job.table_name,
                payload_json=dumps(stage_job.payload),
                state=JobState.WAITING.value,
                priority=stage_job.stage_name.order,
                attempts_made=0,
                max_attempts=attempts,
                group_concurrency=stage_job.group_concurrency,
                cancel_requested=False,
                created_at=self._clock.now(),
            )
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        inserted = self._ops.execute_write(stmt) == 1
        slog.debug("job_enqueued" if inserted else "job_enqueue_duplicate", job_id=job_id, execution_id=stage_job.execution_id)
        return job_id

    # === Consumer side ===

    def dequeue_waiting_batch(self, limit: int, consumer_id: str) -> list[Job]:
        """Atomically claim up to ``limit`` jobs for ``consumer_id``.

        Delayed jobs whose backoff elapsed are promoted first. Candidates are
        taken in (priority, age) order; a candidate is skipped while its
        stage group or the whole queue is at its concurrency limit.
        Returns an empty list while the queue is paused.
        """
        if limit <= 0:
            return []
        self.promote_delayed()
        if self.is_paused():
            return []

        c = jobs_table.c
        candidates = self._ops.execute_fetchall(
            select(c.job_id)
            .where(c.state == JobState.WAITING.value)
            .order_by(c.priority, c.created_at, c.job_id)
            .limit(max(limit * 10, 50))
        )
        claimed: list[Job] = []
        for candidate in candidates:
            if len(claimed) >= limit:
                break
            job = self._try_claim(candidate.job_id, consumer_id)
            if job is not None:
                claimed.append(job)
        return claimed

    def _try_claim(self, job_id: str, consumer_id: str) -> Job | None:
        c = jobs_table.c
        peer = jobs_table.alias("peer")
        active_in_group = (
            select(func.count())
            .select_from(peer)
            .where(
                peer.c.execution_id == c.execution_id,
                peer.c.stage_name == c.stage_name,
                peer.c.state == JobState.ACTIVE.value,
            )
            .correlate(jobs_table)
            .scalar_subquery()
        )
        other = jobs_table.alias("other")
        active_total = select(func.count()).select_from(other).where(other.c.state == JobState.ACTIVE.value).scalar_subquery()
        token = generate_id()
        timestamp = self._clock.now()
        stmt = (
            update(jobs_table)
            .where(c.job_id == job_id)
            .where(c.state == JobState.WAITING.value)
            .where(or_(c.group_concurrency.is_(None), active_in_group < c.group_concurrency))
            .where(active_total < literal(self._settings.global_concurrency))
            .values(
                state=JobState.ACTIVE.value,
                claim_token=token,
                claimed_by=consumer_id,
                claimed_at=timestamp,
                processed_on=timestamp,
            )
        )

        def _claim() -> Job | None:
            with self._db.connection() as conn:
                if self._db.dialect_name == "postgresql":
                    # Serializes claims so the concurrency counts above are exact.
                    conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _CLAIM_LOCK_KEY})
                if conn.execute(stmt).rowcount != 1:
                    return None
                row = conn.execute(select(jobs_table).where(c.job_id == job_id)).fetchone()
                return self._repo.load(row) if row is not None else None

        job = run_with_contention_retry(_claim)
        if job is not None:
            slog.debug("job_claimed", job_id=job_id, consumer_id=consumer_id, attempt=job.attempt)
        return job

    def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff elapsed back to waiting."""
        c = jobs_table.c
        stmt = (
            update(jobs_table)
            .where(c.state == JobState.DELAYED.value)
            .where(c.available_at <= self._clock.now())
            .values(state=JobState.WAITING.value, available_at=None)
        )
        return self._ops.execute_write(stmt)

    def mark_completed(self, job: Job, result: StageResult | None = None) -> JobState | None:
        """Record a successful attempt.

        A job whose cancellation was requested while it ran ends ``failed``
        with "Cancelled by user" instead. The handler's counts and metadata
        are stored with the job so a crashed projection can be replayed.

        Returns:
            The job's new state, or None when this consumer no longer holds
            the claim (the outcome must then be discarded).
        """
        stored = None
        if result is not None:
            stored = {
                "records_processed": result.records_processed,
                "records_failed": result.records_failed,
                "duration_ms": result.duration_ms,
                "metadata": result.metadata,
            }
        return self._finish_attempt(job, error=None, retryable=False, error_kind=None, result=stored)

    def mark_failed(
        self,
        job: Job,
        error: str,
        *,
        retryable: bool,
        error_kind: ErrorKind | None = None,
    ) -> JobState | None:
        """Record a failed attempt.

        Retryable failures with attempts left go to ``delayed`` with a
        backoff; everything else goes to ``failed``.

        Returns:
            DELAYED or FAILED, or None when the claim is stale.
        """
        return self._finish_attempt(job, error=error, retryable=retryable, error_kind=error_kind)

    def _finish_attempt(
        self,
        job: Job,
        *,
        error: str | None,
        retryable: bool,
        error_kind: ErrorKind | None,
        result: dict[str, Any] | None = None,
    ) -> JobState | None:
        if job.claim_token is None:
            raise ValueError(f"Job {job.job_id} was not claimed by this consumer")
        c = jobs_table.c
        claim = and_(c.job_id == job.job_id, c.state == JobState.ACTIVE.value, c.claim_token == job.claim_token)

        def _apply() -> JobState | None:
            with self._db.connection() as conn:
                row = conn.execute(select(c.attempts_made, c.max_attempts, c.cancel_requested).where(claim)).fetchone()
                if row is None:
                    return None
                timestamp = self._clock.now()
                attempts = row.attempts_made + 1
                values: dict[str, Any] = {
                    "attempts_made": attempts,
                    "claim_token": None,
                    "claimed_by": None,
                    "claimed_at": None,
                }
                if row.cancel_requested:
                    state = JobState.FAILED
                    values.update(failed_reason=CANCELLED_BY_USER, error_kind=ErrorKind.CANCELLED.value, finished_on=timestamp)
                elif error is None:
                    state = JobState.COMPLETED
                    values.update(failed_reason=None, error_kind=None, finished_on=timestamp, result_json=dumps(result))
                elif retryable and attempts < row.max_attempts:
                    state = JobState.DELAYED
                    delay_ms = backoff_delay_ms(
                        attempts,
                        base_delay_ms=self._settings.retry_delay_ms,
                        backoff=self._settings.backoff,
                        max_delay_ms=self._settings.max_backoff_ms,
                    )
                    values.update(
                        failed_reason=error,
                        error_kind=error_kind.value if error_kind is not None else None,
                        available_at=timestamp + timedelta(milliseconds=delay_ms),
                    )
                else:
                    state = JobState.FAILED
                    values.update(
                        failed_reason=error,
                        error_kind=error_kind.value if error_kind is not None else None,
                        finished_on=timestamp,
                    )
                values["state"] = state.value
                if conn.execute(update(jobs_table).where(claim).values(**values)).rowcount != 1:
                    return None
                return state

        state = run_with_contention_retry(_apply)
        if state is None:
            slog.warning("job_outcome_discarded_stale_claim", job_id=job.job_id, claim_token=job.claim_token)
        return state

    def heartbeat(self, job: Job) -> bool:
        """Refresh the claim on a running job so stall recovery leaves it alone.

        Returns:
            False when this consumer no longer holds the claim; the caller
            must stop working on the job.
        """
        if job.claim_token is None:
            return False
        c = jobs_table.c
        stmt = (
            update(jobs_table)
            .where(c.job_id == job.job_id)
            .where(c.state == JobState.ACTIVE.value)
            .where(c.claim_token == job.claim_token)
            .values(claimed_at=self._clock.now())
        )
        alive = self._ops.execute_write(stmt) == 1
        if not alive:
            slog.warning("job_claim_lost", job_id=job.job_id, claim_token=job.claim_token)
        return alive

    def requeue_stalled(self, timeout_seconds: float | None = None) -> int:
        """Return jobs held by a vanished consumer to waiting.

        Active jobs claimed longer ago than the stall timeout are released.
        A stalled job that was asked to cancel ends failed instead. Stalls do
        not consume an attempt.

        Returns:
            Number of jobs returned to waiting
        """
        timeout = timeout_seconds if timeout_seconds is not None else self._settings.stall_timeout_seconds
        c = jobs_table.c
        timestamp = self._clock.now()
        stalled = and_(c.state == JobState.ACTIVE.value, c.claimed_at < timestamp - timedelta(seconds=timeout))
        release = {"claim_token": None, "claimed_by": None, "claimed_at": None}

        def _apply() -> int:
            with self._db.connection() as conn:
                conn.execute(
                    update(jobs_table)
                    .where(stalled)
                    .where(c.cancel_requested.is_(True))
                    .values(
                        state=JobState.FAILED.value,
                        failed_reason=CANCELLED_BY_USER,
                        error_kind=ErrorKind.CANCELLED.value,
                        finished_on=timestamp,
                        **release,
                    )
                )
                return int(
                    conn.execute(
                        update(jobs_table).where(stalled).values(state=JobState.WAITING.value, **release)
                    ).rowcount
                )

        count = run_with_contention_retry(_apply)
        if count:
            slog.warning("stalled_jobs_requeued", count=count, timeout_seconds=timeout)
        return count

    # === Control ===

    def pause(self) -> None:
        """Stop handing out jobs. Active jobs keep running. Idempotent."""
        self._set_control(_PAUSED_KEY, "true")
        slog.info("queue_paused")

    def resume(self) -> None:
        """Resume handing out jobs. Idempotent."""
        self._set_control(_PAUSED_KEY, "false")
        slog.info("queue_resumed")

    def is_paused(self) -> bool:
        value = self._ops.execute_scalar(select(queue_control_table.c.value).where(queue_control_table.c.key == _PAUSED_KEY))
        return value == "true"

    def _set_control(self, key: str, value: str) -> None:
        timestamp = self._clock.now()
        stmt = self._db.insert(queue_control_table).values(key=key, value=value, updated_at=timestamp)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        self._ops.execute_write(stmt)

    def cancel(self, job_id: str, reason: str = CANCELLED_BY_USER) -> CancelOutcome:
        """Cancel one job.

        A waiting or delayed job is withdrawn: it ends ``failed`` with
        ``reason`` and keeps its identity, so it cannot be enqueued again.
        An active job gets its cancel-requested flag; the handler notices at
        its next checkpoint and the queue fails it when the attempt ends.
        """
        c = jobs_table.c

        def _apply() -> CancelOutcome:
            with self._db.connection() as conn:
                withdrawn = conn.execute(self._withdraw_stmt(job_id, reason)).rowcount
                if withdrawn == 1:
                    return CancelOutcome.REMOVED
                signalled = conn.execute(
                    update(jobs_table)
                    .where(c.job_id == job_id)
                    .where(c.state == JobState.ACTIVE.value)
                    .values(cancel_requested=True)
                ).rowcount
                if signalled == 1:
                    return CancelOutcome.SIGNALLED
                exists = conn.execute(select(c.job_id).where(c.job_id == job_id)).fetchone()
                return CancelOutcome.ALREADY_FINISHED if exists is not None else CancelOutcome.NOT_FOUND

        outcome = run_with_contention_retry(_apply)
        slog.debug("job_cancel", job_id=job_id, outcome=outcome.value)
        return outcome

    def withdraw(self, job_id: str, reason: str) -> bool:
        """Fail a job only if it has not been claimed yet (waiting or delayed).

        Unlike cancel(), an active job is left alone to finish its attempt.
        """
        return self._ops.execute_write(self._withdraw_stmt(job_id, reason)) == 1

    def _withdraw_stmt(self, job_id: str, reason: str) -> Any:
        c = jobs_table.c
        return (
            update(jobs_table)
            .where(c.job_id == job_id)
            .where(c.state.in_([JobState.WAITING.value, JobState.DELAYED.value]))
            .values(
                state=JobState.FAILED.value,
                failed_reason=reason,
                error_kind=ErrorKind.CANCELLED.value,
                available_at=None,
                finished_on=self._clock.now(),
            )
        )

    def is_cancel_requested(self, job_id: str) -> bool:
        value = self._ops.execute_scalar(select(jobs_table.c.cancel_requested).where(jobs_table.c.job_id == job_id))
        return bool(value)

    # === Reads ===

    def get_job(self, job_id: str) -> Job | None:
        row = self._ops.execute_fetchone(select(jobs_table).where(jobs_table.c.job_id == job_id))
        return self._repo.load(row) if row is not None else None

    def jobs_for_execution(self, execution_id: str) -> list[Job]:
        c = jobs_table.c
        rows = self._ops.execute_fetchall(
            select(jobs_table).where(c.execution_id == execution_id).order_by(c.priority, c.created_at, c.job_id)
        )
        return [self._repo.load(row) for row in rows]

    def stats(self) -> QueueStats:
        c = jobs_table.c
        rows = self._ops.execute_fetchall(select(c.state, func.count().label("n")).group_by(c.state))
        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row.state] = int(row.n)
        return QueueStats(
            waiting=counts[JobState.WAITING.value],
            active=counts[JobState.ACTIVE.value],
            completed=counts[JobState.COMPLETED.value],
            failed=counts[JobState.FAILED.value],
            delayed=counts[JobState.DELAYED.value],
            paused=self.is_paused(),
        )

    def waiting_count(self) -> int:
        value = self._ops.execute_scalar(
            select(func.count()).select_from(jobs_table).where(jobs_table.c.state == JobState.WAITING.value)
        )
        return int(value or 0)

    def delete_for_execution(self, execution_id: str) -> int:
        return self._ops.execute_write(delete(jobs_table).where(jobs_table.c.execution_id == execution_id))
