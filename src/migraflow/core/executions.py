"""Execution store: one row per migration run.

Executions are created together with their planned Stage Ledger rows in a
single transaction, so a visible execution always has its full plan.
Terminal statuses are immutable: every status write is conditional on the
current status being non-terminal.
"""

from collections.abc import Sequence

from sqlalchemy import delete, select, update

from migraflow.contracts.enums import TERMINAL_EXECUTION_STATUSES, ExecutionStatus, JobState
from migraflow.contracts.models import Execution, StageRecord
from migraflow.core._database_ops import DatabaseOps
from migraflow.core._helpers import dumps
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.database import MigraflowDB
from migraflow.core.repositories import ExecutionRepository
from migraflow.core.retry import run_with_contention_retry
from migraflow.core.schema import execution_stages_table, executions_table, jobs_table

_TERMINAL_VALUES = [s.value for s in TERMINAL_EXECUTION_STATUSES]
_OPEN_JOB_VALUES = [JobState.WAITING.value, JobState.ACTIVE.value, JobState.DELAYED.value]


class ExecutionStore:
    """Persistence for Execution records."""

    def __init__(self, db: MigraflowDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock
        self._repo = ExecutionRepository()

    def create(self, execution: Execution, stages: Sequence[StageRecord]) -> None:
        """Insert an execution and its planned stage rows atomically."""
        timestamp = self._clock.now()

        def _insert() -> None:
            with self._db.connection() as conn:
                conn.execute(
                    executions_table.insert().values(
                        execution_id=execution.execution_id,
                        project_id=execution.project_id,
                        status=execution.status.value,
                        error_handling=execution.error_handling.value,
                        config_json=dumps(execution.config),
                        total_records=execution.total_records,
                        processed_records=execution.processed_records,
                        failed_records=execution.failed_records,
                        created_at=execution.created_at,
                        started_at=execution.started_at,
                        ended_at=execution.ended_at,
                    )
                )
                if stages:
                    conn.execute(
                        execution_stages_table.insert(),
                        [
                            {
                                "execution_id": stage.execution_id,
                                "stage_id": stage.stage_id,
                                "project_id": stage.project_id,
                                "stage_name": stage.stage_name.value,
                                "stage_order": stage.stage_order,
                                "title": stage.title,
                                "table_name": stage.table_name,
                                "position": stage.position,
                                "status": stage.status.value,
                                "records_processed": 0,
                                "records_failed": 0,
                                "metadata_json": dumps(stage.metadata),
                                "updated_at": timestamp,
                            }
                            for stage in stages
                        ],
                    )

        run_with_contention_retry(_insert)

    def get(self, execution_id: str) -> Execution | None:
        row = self._ops.execute_fetchone(select(executions_table).where(executions_table.c.execution_id == execution_id))
        if row is None:
            return None
        return self._repo.load(row)

    def list_recent(self, *, project_id: str | None = None, limit: int = 20) -> list[Execution]:
        """Most recent executions first."""
        query = select(executions_table)
        if project_id is not None:
            query = query.where(executions_table.c.project_id == project_id)
        query = query.order_by(executions_table.c.created_at.desc(), executions_table.c.execution_id).limit(limit)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    def list_idle_unfinished(self) -> list[Execution]:
        """Non-terminal executions with no job waiting, running or delayed.

        An execution in this state can only move again if its ledger is
        reconciled with the queue: a consumer died between finishing a job
        and recording what happens next.
        """
        c = executions_table.c
        open_job = (
            select(jobs_table.c.job_id)
            .where(jobs_table.c.execution_id == c.execution_id)
            .where(jobs_table.c.state.in_(_OPEN_JOB_VALUES))
            .exists()
        )
        query = select(executions_table).where(c.status.not_in(_TERMINAL_VALUES)).where(~open_job).order_by(c.created_at)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    def mark_running(self, execution_id: str) -> bool:
        """pending -> running. Returns False if the execution was not pending."""
        stmt = (
            update(executions_table)
            .where(executions_table.c.execution_id == execution_id)
            .where(executions_table.c.status == ExecutionStatus.PENDING.value)
            .values(status=ExecutionStatus.RUNNING.value, started_at=self._clock.now())
        )
        return self._ops.execute_write(stmt) == 1

    def add_counts(self, execution_id: str, *, processed: int, failed: int) -> None:
        """Atomically add a finished stage's record counts to the execution totals."""
        if processed == 0 and failed == 0:
            return
        c = executions_table.c
        stmt = (
            update(executions_table)
            .where(c.execution_id == execution_id)
            .values(
                processed_records=c.processed_records + processed,
                failed_records=c.failed_records + failed,
                total_records=c.total_records + processed + failed,
            )
        )
        self._ops.execute_write(stmt)

    def finish(self, execution_id: str, status: ExecutionStatus) -> bool:
        """Move a non-terminal execution to a terminal status.

        Returns:
            True if this call performed the transition, False if the
            execution was already terminal (or does not exist).
        """
        if not status.is_terminal:
            raise ValueError(f"finish() requires a terminal status, got {status}")
        stmt = (
            update(executions_table)
            .where(executions_table.c.execution_id == execution_id)
            .where(executions_table.c.status.not_in(_TERMINAL_VALUES))
            .values(status=status.value, ended_at=self._clock.now())
        )
        return self._ops.execute_write(stmt) == 1

    def delete(self, execution_id: str) -> int:
        return self._ops.execute_write(delete(executions_table).where(executions_table.c.execution_id == execution_id))
