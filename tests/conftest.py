# tests/conftest.py
"""Shared test fixtures and helpers.

Test handlers:
- ScriptedHandler: a StageHandler whose behaviour per attempt is a list of
  outcomes (a StageResult to return or an exception to raise)
- HandlerPlugin: pluggy plugin registering one handler per stage, scripted
  ones overriding the default always-succeeding handler

Databases:
- ``db``: in-memory SQLite, single shared connection (not for threads)
- ``file_db``: file-backed SQLite in tmp_path (concurrency tests)

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
import threading
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from migraflow.contracts import (
    ErrorHandlingMode,
    Execution,
    ExecutionStatus,
    ProjectDefinition,
    StageJob,
    StageName,
    StageRecord,
    StageResult,
    TableKind,
    TableMapping,
)
from migraflow.core import (
    InMemoryProjectCatalog,
    MigraflowDB,
    MigraflowSettings,
    MockClock,
    PipelineSettings,
    QueueSettings,
)
from migraflow.core.executions import ExecutionStore
from migraflow.engine import MigraflowRuntime
from migraflow.engine.planning import ledger_rows, plan_stages
from migraflow.plugins import PluginManager, StageContext, hookimpl

Outcome = StageResult | BaseException | Callable[[StageContext], StageResult]


class ScriptedHandler:
    """StageHandler returning scripted outcomes, one per call.

    The last outcome repeats once the script is exhausted. Callables receive
    the context and return the result, for handlers that need to write
    correlations or hit checkpoints.
    """

    def __init__(self, stage: StageName, outcomes: Sequence[Outcome] | None = None, *, tables: dict[str, Sequence[Outcome]] | None = None) -> None:
        self.stage = stage
        self.name = f"scripted-{stage.value}"
        self._outcomes = list(outcomes) if outcomes else [StageResult.ok(records_processed=10)]
        self._tables = {table: list(script) for table, script in (tables or {}).items()}
        self._lock = threading.Lock()
        self.calls: list[StageContext] = []

    def run(self, context: StageContext) -> StageResult:
        with self._lock:
            self.calls.append(context)
            table = context.table.target_table if context.table is not None else None
            script = self._tables.get(table, self._outcomes) if table is not None else self._outcomes
            outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, StageResult):
            return outcome
        return outcome(context)

    @property
    def call_count(self) -> int:
        return len(self.calls)


class HandlerPlugin:
    """pluggy plugin providing a handler for every stage."""

    def __init__(self, *overrides: ScriptedHandler) -> None:
        self.handlers: dict[StageName, ScriptedHandler] = {stage: ScriptedHandler(stage) for stage in StageName}
        for handler in overrides:
            self.handlers[handler.stage] = handler

    @hookimpl
    def migraflow_stage_handlers(self) -> list[ScriptedHandler]:
        return list(self.handlers.values())

    def __getitem__(self, stage: StageName) -> ScriptedHandler:
        return self.handlers[stage]


def make_project(
    project_id: str = "crm",
    *,
    dimensions: Sequence[str] = ("dim_customer", "dim_product"),
    facts: Sequence[str] = ("fact_order",),
    source_connection: str | None = "legacy_crm",
    target_connection: str | None = "warehouse",
) -> ProjectDefinition:
    tables = [
        TableMapping(source_table=name.removeprefix("dim_"), target_table=name, kind=TableKind.DIMENSION, order=i)
        for i, name in enumerate(dimensions)
    ]
    tables += [
        TableMapping(source_table=name.removeprefix("fact_"), target_table=name, kind=TableKind.FACT, order=i)
        for i, name in enumerate(facts)
    ]
    return ProjectDefinition(
        project_id=project_id,
        source_connection=source_connection,
        target_connection=target_connection,
        tables=tuple(tables),
    )


def make_settings(
    *,
    error_handling: ErrorHandlingMode = ErrorHandlingMode.FAIL_FAST,
    retry_attempts: int = 3,
    retry_delay_ms: int = 1000,
    parallelism: int = 4,
    global_concurrency: int = 8,
    **overrides: Any,
) -> MigraflowSettings:
    return MigraflowSettings(
        queue=QueueSettings(
            retry_attempts=retry_attempts,
            retry_delay_ms=retry_delay_ms,
            global_concurrency=global_concurrency,
        ),
        pipeline=PipelineSettings(error_handling=error_handling, parallelism=parallelism),
        **overrides,
    )


def seed_execution(
    db: MigraflowDB,
    project: ProjectDefinition | None = None,
    *,
    execution_id: str = "exec-1",
    clock: MockClock | None = None,
    status: ExecutionStatus = ExecutionStatus.PENDING,
    config: dict[str, Any] | None = None,
) -> tuple[Execution, list[StageRecord]]:
    """Insert an execution with its planned ledger rows, without enqueueing."""
    project = project or make_project()
    clock = clock or MockClock()
    execution = Execution(
        execution_id=execution_id,
        project_id=project.project_id,
        status=status,
        error_handling=ErrorHandlingMode.FAIL_FAST,
        config=config if config is not None else {"retry_attempts": 3, "parallelism": 4},
        created_at=clock.now(),
    )
    rows = ledger_rows(execution_id, project.project_id, plan_stages(project))
    ExecutionStore(db, clock=clock).create(execution, rows)
    return execution, rows


def stage_job(execution_id: str = "exec-1", stage: StageName = StageName.EXTRACT, table: str | None = None, **kwargs: Any) -> StageJob:
    stage_id = stage.value if table is None else f"{stage.value}:{table}"
    return StageJob(
        execution_id=execution_id,
        project_id=kwargs.pop("project_id", "crm"),
        stage_name=stage,
        stage_id=stage_id,
        table_name=table,
        config=kwargs.pop("config", {"retry_attempts": 3}),
        **kwargs,
    )


def run_until_idle(runtime: MigraflowRuntime, *, clock: MockClock | None = None, batch: int = 10, max_rounds: int = 200) -> int:
    """Claim and execute jobs until none are left; returns jobs executed.

    Delayed jobs are made eligible by advancing the mock clock.
    """
    executed = 0
    for _ in range(max_rounds):
        jobs = runtime.queue.dequeue_waiting_batch(batch, "test-consumer")
        if not jobs:
            if clock is not None and runtime.queue.stats().delayed:
                clock.advance(3600)
                continue
            return executed
        for job in jobs:
            runtime.executor.run(job)
            executed += 1
    raise AssertionError("queue did not become idle")


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def db() -> Iterator[MigraflowDB]:
    database = MigraflowDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path: Path) -> Iterator[MigraflowDB]:
    database = MigraflowDB(f"sqlite:///{tmp_path / 'migraflow.db'}")
    yield database
    database.close()


@pytest.fixture
def project() -> ProjectDefinition:
    return make_project()


@pytest.fixture
def plugin() -> HandlerPlugin:
    return HandlerPlugin()


@pytest.fixture
def plugin_manager(plugin: HandlerPlugin) -> PluginManager:
    manager = PluginManager()
    manager.register(plugin)
    return manager


@pytest.fixture
def build_runtime(
    db: MigraflowDB,
    clock: MockClock,
    project: ProjectDefinition,
) -> Callable[..., MigraflowRuntime]:
    """Factory for a runtime over the in-memory database and mock clock."""

    def _build(plugin: HandlerPlugin | None = None, settings: MigraflowSettings | None = None, **kwargs: Any) -> MigraflowRuntime:
        manager = PluginManager()
        manager.register(plugin or HandlerPlugin())
        return MigraflowRuntime(
            settings=settings or make_settings(**kwargs),
            db=db,
            plugins=manager,
            catalog=InMemoryProjectCatalog(project),
            clock=clock,
        )

    return _build


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
