"""Project catalog contracts.

The catalog is owned by an external CRUD layer. The engine only reads
project definitions through the ProjectCatalog protocol when an execution is
started.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from migraflow.contracts.enums import TableKind


@dataclass(frozen=True)
class TableMapping:
    """One source table mapped onto one target table.

    Attributes:
        source_table: Table read during extract
        target_table: Table written by the load stage; names the stage unit
        kind: Dimension tables load before fact tables
        order: Position within its load stage (mapping_order)
        active: Inactive mappings are ignored when planning
    """

    source_table: str
    target_table: str
    kind: TableKind
    order: int = 0
    active: bool = True


@dataclass(frozen=True)
class ProjectDefinition:
    """A migration project as seen by the engine."""

    project_id: str
    source_connection: str | None
    target_connection: str | None
    tables: tuple[TableMapping, ...] = field(default_factory=tuple)
    name: str | None = None

    @property
    def active_tables(self) -> tuple[TableMapping, ...]:
        return tuple(sorted((t for t in self.tables if t.active), key=lambda t: t.order))


@runtime_checkable
class ProjectCatalog(Protocol):
    """Read-only lookup of project definitions."""

    def get_project(self, project_id: str) -> ProjectDefinition | None:
        """Return the project, or None when it does not exist."""
        ...
