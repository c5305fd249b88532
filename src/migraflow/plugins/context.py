"""Stage execution context.

The StageContext carries everything a handler needs for one attempt of one
stage unit. It is built by the stage executor; handlers never construct it.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from migraflow.contracts.catalog import TableMapping
from migraflow.contracts.enums import ErrorHandlingMode, LoadStrategy, StageName
from migraflow.contracts.errors import ClaimLostError, ExecutionCancelled
from migraflow.core.correlation import CorrelationHandle


@dataclass
class StageContext:
    """Identity, configuration and services for one stage attempt.

    Attributes:
        execution_id: Execution the stage belongs to
        project_id: Project being migrated
        stage: Stage name
        stage_id: Stage unit id ("extract", "load-facts:orders")
        job_id: Queue job id for this unit
        attempt: 1-based attempt number
        max_attempts: Total attempts the queue allows
        config: Pipeline configuration snapshot taken when the run started
        table: Table mapping for table-level load stages
        correlations: Correlation handle bound to this execution
            (load, validate and report stages only)
        log: Logger bound with execution/stage/attempt context
    """

    execution_id: str
    project_id: str
    stage: StageName
    stage_id: str
    job_id: str
    attempt: int
    max_attempts: int
    config: dict[str, Any]
    table: TableMapping | None = None
    correlations: CorrelationHandle | None = None
    log: structlog.stdlib.BoundLogger = field(default_factory=lambda: structlog.get_logger(__name__))
    cancel_probe: Callable[[], bool] = field(default=lambda: False, repr=False)
    heartbeat: Callable[[], bool] = field(default=lambda: True, repr=False)

    @property
    def batch_size(self) -> int:
        return int(self.config.get("batch_size", 1000))

    @property
    def error_handling(self) -> ErrorHandlingMode:
        return ErrorHandlingMode(self.config.get("error_handling", ErrorHandlingMode.FAIL_FAST.value))

    @property
    def load_strategy(self) -> LoadStrategy:
        return LoadStrategy(self.config.get("load_strategy", LoadStrategy.TRUNCATE_LOAD.value))

    @property
    def validate_data(self) -> bool:
        return bool(self.config.get("validate_data", True))

    def require_correlations(self) -> CorrelationHandle:
        """Correlation handle, or an error for stages that do not receive one."""
        if self.correlations is None:
            raise RuntimeError(f"Stage {self.stage} has no access to the correlation store")
        return self.correlations

    def checkpoint(self) -> None:
        """Cooperative cancellation point.

        Also refreshes the queue claim, so a handler that checkpoints
        regularly is never mistaken for a stalled one.

        Raises:
            ClaimLostError: Once stall recovery handed the job to another consumer
            ExecutionCancelled: Once the user cancelled the execution
        """
        if not self.heartbeat():
            self.log.warning("stage_claim_lost")
            raise ClaimLostError(self.job_id)
        if self.cancel_probe():
            self.log.info("stage_cancel_observed")
            raise ExecutionCancelled()
