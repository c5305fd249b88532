"""Stage Ledger: persistent lifecycle record of every planned stage unit.

The ledger is a projection of job outcomes. Rows only move forward:

    pending -> running -> completed | failed | skipped
    pending -> failed | skipped

Every transition is a conditional UPDATE on the current status, so a late
writer (a handler finishing after its execution was cancelled) can never
resurrect a terminal row. Transition methods return whether they applied.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, delete, func, select, update

from migraflow.contracts.enums import StageStatus
from migraflow.contracts.errors import StageErrorPayload
from migraflow.contracts.models import StageRecord, StageResult
from migraflow.core._database_ops import DatabaseOps
from migraflow.core._helpers import as_utc, dumps, loads
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.database import MigraflowDB
from migraflow.core.repositories import StageRepository
from migraflow.core.retry import run_with_contention_retry
from migraflow.core.schema import execution_stages_table

slog = structlog.get_logger(__name__)

_OPEN_STATUSES = (StageStatus.PENDING.value, StageStatus.RUNNING.value)


def _duration_ms(start: datetime | None, end: datetime) -> int | None:
    if start is None:
        return None
    start_utc = as_utc(start)
    assert start_utc is not None
    return max(0, int((end - start_utc).total_seconds() * 1000))


class StageLedger:
    """Read and transition Stage Ledger rows."""

    def __init__(self, db: MigraflowDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock
        self._repo = StageRepository()

    def _key(self, execution_id: str, stage_id: str) -> Any:
        c = execution_stages_table.c
        return and_(c.execution_id == execution_id, c.stage_id == stage_id)

    # === Reads ===

    def get(self, execution_id: str, stage_id: str) -> StageRecord | None:
        row = self._ops.execute_fetchone(select(execution_stages_table).where(self._key(execution_id, stage_id)))
        if row is None:
            return None
        return self._repo.load(row)

    def list_for_execution(self, execution_id: str) -> list[StageRecord]:
        """All rows of an execution in plan order."""
        c = execution_stages_table.c
        query = select(execution_stages_table).where(c.execution_id == execution_id).order_by(c.position, c.stage_id)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    # === Transitions ===

    def mark_running(self, execution_id: str, stage_id: str) -> bool:
        """pending|running -> running.

        A retry attempt re-enters running; the original start time is kept.
        Returns False when the row is already terminal (cancelled or skipped).
        """
        c = execution_stages_table.c
        timestamp = self._clock.now()
        stmt = (
            update(execution_stages_table)
            .where(self._key(execution_id, stage_id))
            .where(c.status.in_(_OPEN_STATUSES))
            .values(
                status=StageStatus.RUNNING.value,
                start_time=func.coalesce(c.start_time, timestamp),
                updated_at=timestamp,
            )
        )
        return self._ops.execute_write(stmt) == 1

    def record_retry(self, execution_id: str, stage_id: str, error: StageErrorPayload) -> bool:
        """Store the last retryable error on a running row.

        The row stays running; the queue owns the retry schedule.
        """
        return self._merge_metadata(
            execution_id,
            stage_id,
            {"last_error": dict(error), "attempts_made": error["attempt"]},
            require_status=(StageStatus.RUNNING.value,),
        )

    def complete(self, execution_id: str, stage_id: str, result: StageResult) -> bool:
        """running -> completed with the handler's counts and metadata."""
        return self._finish(
            execution_id,
            stage_id,
            StageStatus.COMPLETED,
            allowed_from=(StageStatus.RUNNING.value,),
            records_processed=result.records_processed,
            records_failed=result.records_failed,
            error_message=None,
            metadata=result.metadata,
        )

    def fail(self, execution_id: str, stage_id: str, error_message: str, *, records_failed: int = 0) -> bool:
        """pending|running -> failed."""
        return self._finish(
            execution_id,
            stage_id,
            StageStatus.FAILED,
            allowed_from=_OPEN_STATUSES,
            records_failed=records_failed,
            error_message=error_message,
        )

    def skip(self, execution_id: str, stage_id: str, reason: str) -> bool:
        """pending|running -> skipped. The reason is kept as the row's message."""
        return self._finish(
            execution_id,
            stage_id,
            StageStatus.SKIPPED,
            allowed_from=_OPEN_STATUSES,
            error_message=reason,
        )

    def skip_pending(self, execution_id: str, stage_ids: Sequence[str], reason: str) -> list[str]:
        """Skip the given rows that are still pending. Returns the ids skipped."""
        skipped = []
        for stage_id in stage_ids:
            if self._finish(
                execution_id,
                stage_id,
                StageStatus.SKIPPED,
                allowed_from=(StageStatus.PENDING.value,),
                error_message=reason,
            ):
                skipped.append(stage_id)
        return skipped

    def cancel_open(self, execution_id: str, message: str) -> list[StageRecord]:
        """Fail every pending or running row of an execution.

        Completed, failed and skipped rows are untouched.

        Returns:
            The rows that were open before this call and are now failed.
        """
        c = execution_stages_table.c
        timestamp = self._clock.now()

        def _cancel() -> list[StageRecord]:
            with self._db.connection() as conn:
                rows = conn.execute(
                    select(execution_stages_table)
                    .where(c.execution_id == execution_id)
                    .where(c.status.in_(_OPEN_STATUSES))
                    .order_by(c.position)
                ).fetchall()
                cancelled = []
                for row in rows:
                    record = self._repo.load(row)
                    result = conn.execute(
                        update(execution_stages_table)
                        .where(self._key(execution_id, record.stage_id))
                        .where(c.status.in_(_OPEN_STATUSES))
                        .values(
                            status=StageStatus.FAILED.value,
                            end_time=timestamp,
                            duration_ms=_duration_ms(record.start_time, timestamp),
                            error_message=message,
                            updated_at=timestamp,
                        )
                    )
                    if result.rowcount == 1:
                        cancelled.append(record)
                return cancelled

        return run_with_contention_retry(_cancel)

    def delete_for_execution(self, execution_id: str) -> int:
        return self._ops.execute_write(delete(execution_stages_table).where(execution_stages_table.c.execution_id == execution_id))

    # === Internals ===

    def _finish(
        self,
        execution_id: str,
        stage_id: str,
        status: StageStatus,
        *,
        allowed_from: Sequence[str],
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        c = execution_stages_table.c
        timestamp = self._clock.now()

        def _apply() -> bool:
            with self._db.connection() as conn:
                row = conn.execute(
                    select(c.start_time, c.metadata_json).where(self._key(execution_id, stage_id)).where(c.status.in_(allowed_from))
                ).fetchone()
                if row is None:
                    return False
                merged = {**loads(row.metadata_json), **(metadata or {})}
                result = conn.execute(
                    update(execution_stages_table)
                    .where(self._key(execution_id, stage_id))
                    .where(c.status.in_(allowed_from))
                    .values(
                        status=status.value,
                        end_time=timestamp,
                        duration_ms=_duration_ms(row.start_time, timestamp),
                        records_processed=records_processed,
                        records_failed=records_failed,
                        error_message=error_message,
                        metadata_json=dumps(merged),
                        updated_at=timestamp,
                    )
                )
                return bool(result.rowcount == 1)

        applied = run_with_contention_retry(_apply)
        if applied:
            slog.debug("stage_transition", execution_id=execution_id, stage_id=stage_id, status=status.value)
        return applied

    def _merge_metadata(
        self,
        execution_id: str,
        stage_id: str,
        patch: dict[str, Any],
        *,
        require_status: Sequence[str],
    ) -> bool:
        c = execution_stages_table.c

        def _apply() -> bool:
            with self._db.connection() as conn:
                row = conn.execute(
                    select(c.metadata_json).where(self._key(execution_id, stage_id)).where(c.status.in_(require_status))
                ).fetchone()
                if row is None:
                    return False
                merged = {**loads(row.metadata_json), **patch}
                result = conn.execute(
                    update(execution_stages_table)
                    .where(self._key(execution_id, stage_id))
                    .where(c.status.in_(require_status))
                    .values(metadata_json=dumps(merged), updated_at=self._clock.now())
                )
                return bool(result.rowcount == 1)

        return run_with_contention_retry(_apply)
