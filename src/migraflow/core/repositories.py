"""Repository layer for orchestration records.

Handles the seam between SQLAlchemy rows (strings, naive SQLite datetimes,
JSON text) and domain objects (strict enum types, aware UTC datetimes).
This is NOT a trust boundary - if the database has bad data, we crash.
"""

from typing import Any

from sqlalchemy.engine import Row as SARow

from migraflow.contracts.enums import ErrorHandlingMode, ExecutionStatus, JobState, StageName, StageStatus
from migraflow.contracts.models import CorrelationEntry, Execution, Job, StageRecord
from migraflow.core._helpers import as_utc, loads


class ExecutionRepository:
    """Repository for Execution records."""

    def load(self, row: SARow[Any]) -> Execution:
        """Load Execution from database row.

        Converts string fields to enums. Crashes on invalid data.
        """
        created_at = as_utc(row.created_at)
        assert created_at is not None
        return Execution(
            execution_id=row.execution_id,
            project_id=row.project_id,
            status=ExecutionStatus(row.status),
            error_handling=ErrorHandlingMode(row.error_handling),
            config=loads(row.config_json),
            created_at=created_at,
            total_records=row.total_records,
            processed_records=row.processed_records,
            failed_records=row.failed_records,
            started_at=as_utc(row.started_at),
            ended_at=as_utc(row.ended_at),
        )


class StageRepository:
    """Repository for Stage Ledger rows."""

    def load(self, row: SARow[Any]) -> StageRecord:
        return StageRecord(
            execution_id=row.execution_id,
            project_id=row.project_id,
            stage_id=row.stage_id,
            stage_name=StageName(row.stage_name),
            stage_order=row.stage_order,
            status=StageStatus(row.status),
            title=row.title,
            table_name=row.table_name,
            start_time=as_utc(row.start_time),
            end_time=as_utc(row.end_time),
            duration_ms=row.duration_ms,
            records_processed=row.records_processed,
            records_failed=row.records_failed,
            error_message=row.error_message,
            metadata=loads(row.metadata_json),
            position=row.position,
        )


class JobRepository:
    """Repository for Job Queue rows."""

    def load(self, row: SARow[Any]) -> Job:
        created_at = as_utc(row.created_at)
        assert created_at is not None
        return Job(
            job_id=row.job_id,
            execution_id=row.execution_id,
            project_id=row.project_id,
            stage_name=StageName(row.stage_name),
            stage_id=row.stage_id,
            state=JobState(row.state),
            priority=row.priority,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            payload=loads(row.payload_json),
            created_at=created_at,
            table_name=row.table_name,
            group_concurrency=row.group_concurrency,
            available_at=as_utc(row.available_at),
            claim_token=row.claim_token,
            claimed_by=row.claimed_by,
            claimed_at=as_utc(row.claimed_at),
            cancel_requested=bool(row.cancel_requested),
            failed_reason=row.failed_reason,
            error_kind=row.error_kind,
            processed_on=as_utc(row.processed_on),
            finished_on=as_utc(row.finished_on),
            result=loads(row.result_json) if row.result_json is not None else None,
        )


class CorrelationRepository:
    """Repository for Record Correlation entries."""

    def load(self, row: SARow[Any]) -> CorrelationEntry:
        created_at = as_utc(row.created_at)
        assert created_at is not None
        return CorrelationEntry(
            execution_id=row.execution_id,
            project_id=row.project_id,
            table_name=row.table_name,
            source_id=row.source_id,
            target_id=row.target_id,
            external_doc_id=row.external_doc_id,
            created_at=created_at,
            updated_at=as_utc(row.updated_at),
        )
