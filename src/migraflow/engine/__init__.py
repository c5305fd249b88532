# src/migraflow/engine/__init__.py
"""Execution engine for Migraflow.

- JobQueue: durable, claim-based job storage (source of truth)
- StageExecutor: runs one claimed job and projects the outcome to the ledger
- ExecutionController: start/status/cancel and queue control
- DrainConsumer / Worker: the two ways jobs get consumed

Example:
    from migraflow.core import MigraflowSettings, MigraflowDB
    from migraflow.engine import MigraflowRuntime

    runtime = MigraflowRuntime.from_settings(settings)
    started = runtime.controller.start("crm")
    runtime.worker().run(max_idle_polls=1)
    print(runtime.controller.status(started.execution_id).status)
"""

from migraflow.engine.controller import ExecutionController, aggregate_status, progress_percent
from migraflow.engine.drain import DrainConsumer
from migraflow.engine.executor import StageExecutor
from migraflow.engine.guard import JobClaimGuard
from migraflow.engine.planning import PlannedStage, plan_stages, validate_project
from migraflow.engine.queue import JobQueue
from migraflow.engine.runtime import MigraflowRuntime
from migraflow.engine.worker import Worker, WorkerReport

__all__ = [
    "DrainConsumer",
    "ExecutionController",
    "JobClaimGuard",
    "JobQueue",
    "MigraflowRuntime",
    "PlannedStage",
    "StageExecutor",
    "Worker",
    "WorkerReport",
    "aggregate_status",
    "plan_stages",
    "progress_percent",
    "validate_project",
]
