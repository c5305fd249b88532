# src/migraflow/core/__init__.py
"""Core infrastructure: Database, Configuration, Stage Ledger, Correlation store, Logging."""

from migraflow.core.catalog import InMemoryProjectCatalog, SettingsProjectCatalog
from migraflow.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from migraflow.core.config import (
    DatabaseSettings,
    DrainSettings,
    LoggingSettings,
    MigraflowSettings,
    PipelineSettings,
    ProjectSettings,
    QueueSettings,
    RetentionSettings,
    TableMappingSettings,
    WorkerSettings,
    load_settings,
    load_settings_or_default,
)
from migraflow.core.correlation import CorrelationHandle, CorrelationStore, CorrelationWrite
from migraflow.core.database import MigraflowDB, SchemaCompatibilityError
from migraflow.core.executions import ExecutionStore
from migraflow.core.ledger import StageLedger
from migraflow.core.logging import configure_logging, get_logger
from migraflow.core.retention import PurgeResult, RetentionManager
from migraflow.core.retry import ContentionRetryConfig, backoff_delay_ms, run_with_contention_retry

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "ContentionRetryConfig",
    "CorrelationHandle",
    "CorrelationStore",
    "CorrelationWrite",
    "DatabaseSettings",
    "DrainSettings",
    "ExecutionStore",
    "InMemoryProjectCatalog",
    "LoggingSettings",
    "MigraflowDB",
    "MigraflowSettings",
    "MockClock",
    "PipelineSettings",
    "ProjectSettings",
    "PurgeResult",
    "QueueSettings",
    "RetentionManager",
    "RetentionSettings",
    "SchemaCompatibilityError",
    "SettingsProjectCatalog",
    "StageLedger",
    "SystemClock",
    "TableMappingSettings",
    "WorkerSettings",
    "backoff_delay_ms",
    "configure_logging",
    "get_logger",
    "load_settings",
    "load_settings_or_default",
    "run_with_contention_retry",
]
