# src/migraflow/core/schema.py
"""SQLAlchemy table definitions for the orchestration database.

Uses SQLAlchemy Core (not ORM) for explicit control over the conditional
updates the job queue relies on, and compatibility with SQLite and
PostgreSQL.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Executions ===

executions_table = Table(
    "executions",
    metadata,
    Column("execution_id", String(64), primary_key=True),
    Column("project_id", String(128), nullable=False),
    Column("status", String(32), nullable=False),
    Column("error_handling", String(32), nullable=False),
    Column("config_json", Text, nullable=False),  # pipeline snapshot taken at start
    Column("total_records", Integer, nullable=False, default=0),
    Column("processed_records", Integer, nullable=False, default=0),
    Column("failed_records", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("ended_at", DateTime(timezone=True)),
)

Index("ix_executions_project_created", executions_table.c.project_id, executions_table.c.created_at)

# === Stage Ledger ===

execution_stages_table = Table(
    "execution_stages",
    metadata,
    Column("execution_id", String(64), ForeignKey("executions.execution_id"), nullable=False),
    Column("stage_id", String(255), nullable=False),  # "extract" or "load-facts:<table>"
    Column("project_id", String(128), nullable=False),
    Column("stage_name", String(32), nullable=False),
    Column("stage_order", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("table_name", String(255)),  # table-level load stages only
    Column("position", Integer, nullable=False),  # plan sequence within the execution
    Column("status", String(32), nullable=False),
    Column("start_time", DateTime(timezone=True)),
    Column("end_time", DateTime(timezone=True)),
    Column("duration_ms", Integer),
    Column("records_processed", Integer, nullable=False, default=0),
    Column("records_failed", Integer, nullable=False, default=0),
    Column("error_message", Text),
    Column("metadata_json", Text),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("execution_id", "stage_id"),
    CheckConstraint("stage_order BETWEEN 1 AND 6", name="ck_execution_stages_order"),
)

# === Job Queue ===

jobs_table = Table(
    "jobs",
    metadata,
    Column("job_id", String(255), primary_key=True),  # "<execution_id>-<stage_id>"
    Column("execution_id", String(64), ForeignKey("executions.execution_id"), nullable=False),
    Column("project_id", String(128), nullable=False),
    Column("stage_name", String(32), nullable=False),
    Column("stage_id", String(255), nullable=False),
    Column("table_name", String(255)),
    Column("payload_json", Text, nullable=False),
    Column("state", String(32), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("attempts_made", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False),
    # Concurrency group key: at most group_concurrency active jobs per
    # (execution_id, stage_name). NULL means no group bound.
    Column("group_concurrency", Integer),
    Column("available_at", DateTime(timezone=True)),
    Column("claim_token", String(64)),
    Column("claimed_by", String(255)),
    Column("claimed_at", DateTime(timezone=True)),
    Column("cancel_requested", Boolean, nullable=False, default=False),
    Column("failed_reason", Text),
    Column("error_kind", String(32)),
    # Handler result of a completed attempt, kept so the ledger can be
    # reconciled if the consumer dies before recording it.
    Column("result_json", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_on", DateTime(timezone=True)),
    Column("finished_on", DateTime(timezone=True)),
    CheckConstraint("attempts_made >= 0", name="ck_jobs_attempts_non_negative"),
)

Index("ix_jobs_state_priority", jobs_table.c.state, jobs_table.c.priority, jobs_table.c.created_at)
Index("ix_jobs_execution_stage", jobs_table.c.execution_id, jobs_table.c.stage_name, jobs_table.c.state)

queue_control_table = Table(
    "queue_control",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", String(255), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Record Correlation Store ===

record_correlations_table = Table(
    "record_correlations",
    metadata,
    Column("execution_id", String(64), ForeignKey("executions.execution_id"), nullable=False),
    Column("project_id", String(128), nullable=False),
    Column("table_name", String(255), nullable=False),
    Column("source_id", String(255), nullable=False),
    Column("target_id", String(255), nullable=False),
    Column("external_doc_id", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("execution_id", "table_name", "source_id"),
)

Index(
    "ix_record_correlations_target",
    record_correlations_table.c.execution_id,
    record_correlations_table.c.target_id,
)
Index(
    "ix_record_correlations_external_doc",
    record_correlations_table.c.execution_id,
    record_correlations_table.c.external_doc_id,
)
