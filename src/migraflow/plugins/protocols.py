"""Protocols for stage handlers.

Stage handlers hold the business logic of one pipeline stage (the
per-database extract/transform/load adapters). The engine only knows them
through this protocol.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from migraflow.contracts.enums import StageName
from migraflow.contracts.models import StageResult

if TYPE_CHECKING:
    from migraflow.plugins.context import StageContext


@runtime_checkable
class StageHandler(Protocol):
    """Runs one stage unit.

    Handlers must be idempotent per (execution, stage unit): an attempt can
    be retried after a transient failure, or re-run after its consumer
    died. Load handlers make their writes idempotent through correlation
    upserts.

    Handlers should call ``context.checkpoint()`` between batches so a
    cancelled execution stops promptly.

    Return a StageResult on success, or ``StageResult.failure(...)`` for
    failures detected without an exception. Raise TransientError (or let a
    driver's connection/timeout error propagate) to request a retry.
    """

    name: str
    stage: StageName

    def run(self, context: "StageContext") -> StageResult:
        """Execute the stage unit described by ``context``."""
        ...
