# src/migraflow/core/retention.py
"""Purge of finished executions.

Removes every row an execution owns (correlation entries, jobs, stage rows
and the execution itself) in one transaction. Only terminal executions are
eligible; a running execution still has live jobs and handlers that may
write correlations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, select

from migraflow.contracts.enums import TERMINAL_EXECUTION_STATUSES, ExecutionStatus
from migraflow.contracts.errors import NotFoundError, ValidationError
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.retry import run_with_contention_retry
from migraflow.core.schema import (
    execution_stages_table,
    executions_table,
    jobs_table,
    record_correlations_table,
)

if TYPE_CHECKING:
    from migraflow.core.database import MigraflowDB

slog = structlog.get_logger(__name__)


@dataclass
class PurgeResult:
    """Result of a purge operation."""

    execution_ids: list[str] = field(default_factory=list)
    correlations_deleted: int = 0
    jobs_deleted: int = 0
    stages_deleted: int = 0
    duration_seconds: float = 0.0

    @property
    def executions_deleted(self) -> int:
        return len(self.execution_ids)

    def to_dict(self) -> dict[str, object]:
        return {
            "execution_ids": list(self.execution_ids),
            "executions_deleted": self.executions_deleted,
            "correlations_deleted": self.correlations_deleted,
            "jobs_deleted": self.jobs_deleted,
            "stages_deleted": self.stages_deleted,
            "duration_seconds": self.duration_seconds,
        }


class RetentionManager:
    """Deletes terminal executions, one at a time or by age."""

    def __init__(self, db: "MigraflowDB", *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._clock = clock

    def purge_execution(self, execution_id: str) -> PurgeResult:
        """Delete one terminal execution and everything it owns.

        Raises:
            NotFoundError: If the execution does not exist
            ValidationError: If the execution is not terminal yet
        """
        start = perf_counter()

        def _purge() -> PurgeResult:
            with self._db.connection() as conn:
                status = conn.execute(
                    select(executions_table.c.status).where(executions_table.c.execution_id == execution_id)
                ).scalar()
                if status is None:
                    raise NotFoundError(f"Execution not found: {execution_id}")
                if not ExecutionStatus(status).is_terminal:
                    raise ValidationError(f"Execution {execution_id} is {status}; only finished executions can be purged")

                result = PurgeResult(execution_ids=[execution_id])
                result.correlations_deleted = conn.execute(
                    delete(record_correlations_table).where(record_correlations_table.c.execution_id == execution_id)
                ).rowcount
                result.jobs_deleted = conn.execute(delete(jobs_table).where(jobs_table.c.execution_id == execution_id)).rowcount
                result.stages_deleted = conn.execute(
                    delete(execution_stages_table).where(execution_stages_table.c.execution_id == execution_id)
                ).rowcount
                conn.execute(delete(executions_table).where(executions_table.c.execution_id == execution_id))
                return result

        result = run_with_contention_retry(_purge)
        result.duration_seconds = perf_counter() - start
        slog.info(
            "execution_purged",
            execution_id=execution_id,
            correlations_deleted=result.correlations_deleted,
            jobs_deleted=result.jobs_deleted,
            stages_deleted=result.stages_deleted,
        )
        return result

    def find_expired(self, retention_days: int, as_of: datetime | None = None) -> list[str]:
        """Terminal executions that ended before the retention cutoff.

        Args:
            retention_days: Days to keep an execution after it ended
            as_of: Reference datetime for cutoff calculation (defaults to now)
        """
        reference = as_of if as_of is not None else self._clock.now()
        cutoff = reference - timedelta(days=retention_days)
        c = executions_table.c
        query = (
            select(c.execution_id)
            .where(c.status.in_([s.value for s in TERMINAL_EXECUTION_STATUSES]))
            .where(c.ended_at.isnot(None))
            .where(c.ended_at < cutoff)
            .order_by(c.ended_at)
        )
        with self._db.connection() as conn:
            return [row[0] for row in conn.execute(query)]

    def purge_expired(self, retention_days: int, as_of: datetime | None = None) -> PurgeResult:
        """Purge every terminal execution older than the retention period."""
        start = perf_counter()
        total = PurgeResult()
        for execution_id in self.find_expired(retention_days, as_of):
            one = self.purge_execution(execution_id)
            total.execution_ids.extend(one.execution_ids)
            total.correlations_deleted += one.correlations_deleted
            total.jobs_deleted += one.jobs_deleted
            total.stages_deleted += one.stages_deleted
        total.duration_seconds = perf_counter() - start
        return total
