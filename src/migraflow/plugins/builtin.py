"""Dry-run stage handlers.

Every stage is handled by a handler that walks the plan without touching
any database: it logs what it would do and reports zero records. Enable it
by listing ``migraflow.plugins.builtin`` under ``plugins`` in settings to
smoke-test a deployment's queue, worker and drain wiring before the real
adapters are installed.
"""

from migraflow.contracts.enums import StageName
from migraflow.contracts.models import StageResult
from migraflow.plugins.context import StageContext
from migraflow.plugins.hookspecs import hookimpl


class DryRunHandler:
    """Reports success for one stage without doing any work."""

    def __init__(self, stage: StageName) -> None:
        self.stage = stage
        self.name = f"dry-run-{stage.value}"

    def run(self, context: StageContext) -> StageResult:
        context.checkpoint()
        table = context.table.target_table if context.table is not None else None
        context.log.info("dry_run_stage", table=table, batch_size=context.batch_size)
        return StageResult.ok(dry_run=True)


@hookimpl
def migraflow_stage_handlers() -> list[DryRunHandler]:
    return [DryRunHandler(stage) for stage in StageName]
