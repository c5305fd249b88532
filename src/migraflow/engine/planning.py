"""Stage planning: turn a project definition into Stage Ledger rows.

A plan is the fixed stage sequence with the load stages expanded per table:

    extract, transform,
    load-dimensions:<table> (one per active dimension mapping),
    load-facts:<table>      (one per active fact mapping),
    validate, report

Load stages without any active mapping are omitted. All rows sharing a
stage name form one stage group; groups run strictly in order.
"""

from collections import Counter
from dataclasses import dataclass

from migraflow.contracts.catalog import ProjectDefinition, TableMapping
from migraflow.contracts.enums import STAGE_ORDER, STAGE_TITLES, StageName, StageStatus, TableKind
from migraflow.contracts.errors import NotFoundError, ValidationError
from migraflow.contracts.models import Execution, StageJob, StageRecord, stage_id_for


@dataclass(frozen=True)
class PlannedStage:
    stage_name: StageName
    stage_id: str
    table: TableMapping | None = None

    @property
    def title(self) -> str:
        base = STAGE_TITLES[self.stage_name]
        if self.table is None:
            return base
        return f"{base}: {self.table.target_table}"


def validate_project(project: ProjectDefinition | None, project_id: str) -> ProjectDefinition:
    """Check a project can be executed.

    Raises:
        NotFoundError: Unknown project, or no active table mappings
        ValidationError: Missing source or target connection, or two
            active tables loading the same target table
    """
    if project is None:
        raise NotFoundError(f"Project not found: {project_id}")
    if not project.source_connection or not project.target_connection:
        raise ValidationError(f"Project {project_id} must have both a source and a target connection")
    if not project.active_tables:
        raise NotFoundError(f"Project {project_id} has no active table mappings")
    counts = Counter(table.target_table for table in project.active_tables)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        raise ValidationError(f"Project {project_id} maps more than one table to: {', '.join(duplicates)}")
    return project


def plan_stages(project: ProjectDefinition) -> list[PlannedStage]:
    """Expand the stage sequence for a project, in execution order."""
    tables = project.active_tables
    planned: list[PlannedStage] = []
    for stage in STAGE_ORDER:
        if stage.is_table_level:
            for table in tables:
                if table.kind.stage is stage:
                    planned.append(PlannedStage(stage, stage_id_for(stage, table.target_table), table))
        else:
            planned.append(PlannedStage(stage, stage_id_for(stage)))
    return planned


def ledger_rows(execution_id: str, project_id: str, planned: list[PlannedStage]) -> list[StageRecord]:
    """Initial (pending) ledger rows for a plan."""
    return [
        StageRecord(
            execution_id=execution_id,
            project_id=project_id,
            stage_id=stage.stage_id,
            stage_name=stage.stage_name,
            stage_order=stage.stage_name.order,
            status=StageStatus.PENDING,
            title=stage.title,
            table_name=stage.table.target_table if stage.table is not None else None,
            metadata=_table_metadata(stage.table),
            position=position,
        )
        for position, stage in enumerate(planned, start=1)
    ]


def _table_metadata(table: TableMapping | None) -> dict[str, object]:
    if table is None:
        return {}
    return {
        "source_table": table.source_table,
        "target_table": table.target_table,
        "kind": table.kind.value,
        "order": table.order,
    }


def first_group(rows: list[StageRecord]) -> list[StageRecord]:
    """The ledger rows to enqueue when an execution starts."""
    if not rows:
        return []
    first = min(rows, key=lambda row: row.stage_order).stage_name
    return [row for row in rows if row.stage_name is first]


def stage_jobs_for(execution: Execution, rows: list[StageRecord]) -> list[StageJob]:
    """Queue requests for one stage group of an execution.

    Table-level load jobs carry the execution's ``parallelism`` as their
    group concurrency, bounding how many tables of one stage load at once.
    """
    parallelism = int(execution.config.get("parallelism", 1))
    return [
        StageJob(
            execution_id=execution.execution_id,
            project_id=execution.project_id,
            stage_name=row.stage_name,
            stage_id=row.stage_id,
            table_name=row.table_name,
            config=execution.config,
            metadata=row.metadata,
            group_concurrency=parallelism if row.stage_name.is_table_level else None,
        )
        for row in rows
    ]


def table_from_metadata(metadata: dict[str, object]) -> TableMapping | None:
    """Rebuild the table mapping carried in a table-level job's metadata."""
    if "target_table" not in metadata:
        return None
    return TableMapping(
        source_table=str(metadata["source_table"]),
        target_table=str(metadata["target_table"]),
        kind=TableKind(str(metadata["kind"])),
        order=int(str(metadata.get("order", 0))),
    )
