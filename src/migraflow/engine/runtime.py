"""Wiring of stores, queue, executor and consumers over one database."""

from dataclasses import dataclass, field

from migraflow.contracts.catalog import ProjectCatalog
from migraflow.core.catalog import SettingsProjectCatalog
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.config import MigraflowSettings
from migraflow.core.correlation import CorrelationStore
from migraflow.core.database import MigraflowDB
from migraflow.core.executions import ExecutionStore
from migraflow.core.ledger import StageLedger
from migraflow.engine.controller import ExecutionController
from migraflow.engine.drain import DrainConsumer
from migraflow.engine.executor import StageExecutor
from migraflow.engine.queue import JobQueue
from migraflow.engine.worker import Worker
from migraflow.plugins.manager import PluginManager, build_plugin_manager


@dataclass
class MigraflowRuntime:
    """Every engine component sharing one database and clock."""

    settings: MigraflowSettings
    db: MigraflowDB
    plugins: PluginManager
    catalog: ProjectCatalog
    clock: Clock = DEFAULT_CLOCK
    queue: JobQueue = field(init=False)
    ledger: StageLedger = field(init=False)
    executions: ExecutionStore = field(init=False)
    correlations: CorrelationStore = field(init=False)
    executor: StageExecutor = field(init=False)
    controller: ExecutionController = field(init=False)

    def __post_init__(self) -> None:
        self.queue = JobQueue(self.db, self.settings.queue, clock=self.clock)
        self.ledger = StageLedger(self.db, clock=self.clock)
        self.executions = ExecutionStore(self.db, clock=self.clock)
        self.correlations = CorrelationStore(self.db, clock=self.clock)
        self.executor = StageExecutor(
            queue=self.queue,
            ledger=self.ledger,
            executions=self.executions,
            correlations=self.correlations,
            plugins=self.plugins,
            clock=self.clock,
        )
        self.controller = ExecutionController(
            db=self.db,
            queue=self.queue,
            catalog=self.catalog,
            settings=self.settings,
            clock=self.clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: MigraflowSettings,
        *,
        db: MigraflowDB | None = None,
        plugins: PluginManager | None = None,
        catalog: ProjectCatalog | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> "MigraflowRuntime":
        """Build a runtime, opening the database and loading plugins from settings."""
        return cls(
            settings=settings,
            db=db if db is not None else MigraflowDB.from_settings(settings.database),
            plugins=plugins if plugins is not None else build_plugin_manager(settings.plugins),
            catalog=catalog if catalog is not None else SettingsProjectCatalog.from_settings(settings),
            clock=clock,
        )

    def drain_consumer(self) -> DrainConsumer:
        return DrainConsumer(queue=self.queue, executor=self.executor, settings=self.settings.drain)

    def worker(self, *, concurrency: int | None = None) -> Worker:
        worker_settings = self.settings.worker
        if concurrency is not None:
            worker_settings = worker_settings.model_copy(update={"concurrency": concurrency})
        return Worker(queue=self.queue, executor=self.executor, settings=worker_settings)

    def close(self) -> None:
        self.db.close()
