"""Record Correlation Store.

Maps (execution, table, source record id) to the id the record received in
the target system, plus an optional external document id. Load stages write
entries as they insert rows; later load, validate and report stages resolve
foreign keys and reconcile counts through them.

Writes are upserts: a second put for the same key is a corrective
overwrite, never a duplicate.
"""

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import delete, func, select

from migraflow.contracts.errors import NotFoundError
from migraflow.contracts.models import CorrelationEntry, CorrelationStats
from migraflow.core._database_ops import DatabaseOps
from migraflow.core.clock import DEFAULT_CLOCK, Clock
from migraflow.core.database import MigraflowDB
from migraflow.core.repositories import CorrelationRepository
from migraflow.core.retry import run_with_contention_retry
from migraflow.core.schema import executions_table, record_correlations_table

T = TypeVar("T")

# Rows per multi-row upsert; stays well under SQLite's bound-parameter limit.
_WRITE_CHUNK = 500
_READ_CHUNK = 500


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(frozen=True)
class CorrelationWrite:
    """One entry in a batched put."""

    source_id: str
    target_id: str
    external_doc_id: str | None = None


class CorrelationStore:
    """Persistence and lookup of record correlation entries."""

    def __init__(self, db: MigraflowDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._clock = clock
        self._repo = CorrelationRepository()

    def _project_for(self, execution_id: str) -> str:
        project_id = self._ops.execute_scalar(
            select(executions_table.c.project_id).where(executions_table.c.execution_id == execution_id)
        )
        if project_id is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return str(project_id)

    # === Writes ===

    def put(
        self,
        execution_id: str,
        table: str,
        source_id: str,
        target_id: str,
        external_doc_id: str | None = None,
        *,
        project_id: str | None = None,
    ) -> None:
        """Upsert one entry.

        An existing entry for the same (execution, table, source_id) gets the
        new target id. Its external document id is replaced only when a new
        one is given.
        """
        self.put_many(
            execution_id,
            table,
            [CorrelationWrite(source_id=source_id, target_id=target_id, external_doc_id=external_doc_id)],
            project_id=project_id,
        )

    def put_many(
        self,
        execution_id: str,
        table: str,
        entries: Iterable[CorrelationWrite],
        *,
        project_id: str | None = None,
    ) -> int:
        """Upsert a batch of entries for one table.

        Entries repeating a source id within the batch collapse to the last
        one. Returns the number of distinct keys written.
        """
        latest: dict[str, CorrelationWrite] = {}
        for entry in entries:
            latest[entry.source_id] = entry
        if not latest:
            return 0
        project = project_id if project_id is not None else self._project_for(execution_id)
        timestamp = self._clock.now()
        rows = [
            {
                "execution_id": execution_id,
                "project_id": project,
                "table_name": table,
                "source_id": entry.source_id,
                "target_id": entry.target_id,
                "external_doc_id": entry.external_doc_id,
                "created_at": timestamp,
                "updated_at": timestamp,
            }
            for entry in latest.values()
        ]

        c = record_correlations_table.c

        def _write() -> None:
            with self._db.connection() as conn:
                for chunk in _chunks(rows, _WRITE_CHUNK):
                    stmt = self._db.insert(record_correlations_table).values(list(chunk))
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[c.execution_id, c.table_name, c.source_id],
                        set_={
                            "target_id": stmt.excluded.target_id,
                            "external_doc_id": func.coalesce(stmt.excluded.external_doc_id, c.external_doc_id),
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    conn.execute(stmt)

        run_with_contention_retry(_write)
        return len(rows)

    # === Lookups ===

    def get_by_pair(self, execution_id: str, table: str, source_id: str) -> CorrelationEntry | None:
        c = record_correlations_table.c
        row = self._ops.execute_fetchone(
            select(record_correlations_table).where(c.execution_id == execution_id, c.table_name == table, c.source_id == source_id)
        )
        return self._repo.load(row) if row is not None else None

    def get_by_target_id(self, execution_id: str, target_id: str, *, table: str | None = None) -> CorrelationEntry | None:
        """Find the entry whose record landed as ``target_id``.

        Target ids are only unique per table; without ``table`` the first
        match in table-name order is returned.
        """
        c = record_correlations_table.c
        query = select(record_correlations_table).where(c.execution_id == execution_id, c.target_id == target_id)
        if table is not None:
            query = query.where(c.table_name == table)
        row = self._ops.execute_fetchone(query.order_by(c.table_name, c.source_id).limit(1))
        return self._repo.load(row) if row is not None else None

    def get_by_external_doc_id(self, execution_id: str, external_doc_id: str) -> CorrelationEntry | None:
        c = record_correlations_table.c
        row = self._ops.execute_fetchone(
            select(record_correlations_table)
            .where(c.execution_id == execution_id, c.external_doc_id == external_doc_id)
            .order_by(c.table_name, c.source_id)
            .limit(1)
        )
        return self._repo.load(row) if row is not None else None

    def resolve_many(self, execution_id: str, table: str, source_ids: Iterable[str]) -> dict[str, str]:
        """Map source ids to target ids; unknown ids are absent from the result."""
        wanted = list(dict.fromkeys(source_ids))
        c = record_correlations_table.c
        resolved: dict[str, str] = {}
        for chunk in _chunks(wanted, _READ_CHUNK):
            rows = self._ops.execute_fetchall(
                select(c.source_id, c.target_id).where(
                    c.execution_id == execution_id,
                    c.table_name == table,
                    c.source_id.in_(list(chunk)),
                )
            )
            resolved.update({row.source_id: row.target_id for row in rows})
        return resolved

    def list_for_table(
        self,
        execution_id: str,
        table: str,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[CorrelationEntry]:
        c = record_correlations_table.c
        query = (
            select(record_correlations_table)
            .where(c.execution_id == execution_id, c.table_name == table)
            .order_by(c.source_id)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query)]

    def stats_for(self, execution_id: str) -> CorrelationStats:
        c = record_correlations_table.c
        rows = self._ops.execute_fetchall(
            select(
                c.table_name,
                func.count().label("total"),
                func.count(c.external_doc_id).label("with_external_doc"),
            )
            .where(c.execution_id == execution_id)
            .group_by(c.table_name)
            .order_by(c.table_name)
        )
        by_table = {row.table_name: int(row.total) for row in rows}
        return CorrelationStats(
            total=sum(by_table.values()),
            by_table=by_table,
            with_external_doc=sum(int(row.with_external_doc) for row in rows),
        )

    # === Lifecycle ===

    def purge(self, execution_id: str) -> int:
        """Delete every entry of an execution. Returns the number deleted."""
        return self._ops.execute_write(
            delete(record_correlations_table).where(record_correlations_table.c.execution_id == execution_id)
        )

    def bind(self, execution_id: str, project_id: str) -> "CorrelationHandle":
        return CorrelationHandle(self, execution_id, project_id)


class CorrelationHandle:
    """Correlation store view bound to one execution.

    Stage handlers receive this instead of the store so they cannot read or
    write another execution's entries.
    """

    def __init__(self, store: CorrelationStore, execution_id: str, project_id: str) -> None:
        self._store = store
        self.execution_id = execution_id
        self.project_id = project_id

    def put(self, table: str, source_id: str, target_id: str, external_doc_id: str | None = None) -> None:
        self._store.put(self.execution_id, table, source_id, target_id, external_doc_id, project_id=self.project_id)

    def put_many(self, table: str, entries: Iterable[CorrelationWrite] | Mapping[str, str]) -> int:
        """Batch upsert. Accepts CorrelationWrite items or a {source_id: target_id} mapping."""
        writes: Iterable[CorrelationWrite]
        if isinstance(entries, Mapping):
            writes = [CorrelationWrite(source_id=s, target_id=t) for s, t in entries.items()]
        else:
            writes = entries
        return self._store.put_many(self.execution_id, table, writes, project_id=self.project_id)

    def get(self, table: str, source_id: str) -> CorrelationEntry | None:
        return self._store.get_by_pair(self.execution_id, table, source_id)

    def get_by_target_id(self, target_id: str, *, table: str | None = None) -> CorrelationEntry | None:
        return self._store.get_by_target_id(self.execution_id, target_id, table=table)

    def get_by_external_doc_id(self, external_doc_id: str) -> CorrelationEntry | None:
        return self._store.get_by_external_doc_id(self.execution_id, external_doc_id)

    def resolve_many(self, table: str, source_ids: Iterable[str]) -> dict[str, str]:
        return self._store.resolve_many(self.execution_id, table, source_ids)

    def list_for_table(self, table: str, **kwargs: Any) -> list[CorrelationEntry]:
        return self._store.list_for_table(self.execution_id, table, **kwargs)

    def stats(self) -> CorrelationStats:
        return self._store.stats_for(self.execution_id)
