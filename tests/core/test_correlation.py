# tests/core/test_correlation.py
"""Tests for the Record Correlation Store."""

import pytest

from migraflow.contracts import NotFoundError
from migraflow.core.clock import MockClock
from migraflow.core.correlation import CorrelationStore, CorrelationWrite
from migraflow.core.database import MigraflowDB
from tests.conftest import seed_execution


@pytest.fixture
def store(db: MigraflowDB, clock: MockClock) -> CorrelationStore:
    seed_execution(db, clock=clock)
    seed_execution(db, execution_id="exec-2", clock=clock)
    return CorrelationStore(db, clock=clock)


class TestPut:
    def test_put_then_lookup_every_way(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1001", "DOC-9")

        by_pair = store.get_by_pair("exec-1", "dim_customer", "C-1")
        assert by_pair is not None
        assert by_pair.target_id == "1001"
        assert by_pair.project_id == "crm"
        assert store.get_by_target_id("exec-1", "1001") == by_pair
        assert store.get_by_external_doc_id("exec-1", "DOC-9") == by_pair

    def test_second_put_overwrites_target(self, store: CorrelationStore, clock: MockClock) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1001", "DOC-9")
        clock.advance(5)
        store.put("exec-1", "dim_customer", "C-1", "2002")

        entry = store.get_by_pair("exec-1", "dim_customer", "C-1")
        assert entry is not None
        assert entry.target_id == "2002"
        # A put without a document id keeps the one already stored
        assert entry.external_doc_id == "DOC-9"
        assert entry.updated_at == clock.now()
        assert store.stats_for("exec-1").total == 1

    def test_unknown_execution_rejected(self, store: CorrelationStore) -> None:
        with pytest.raises(NotFoundError):
            store.put("exec-missing", "dim_customer", "C-1", "1001")

    def test_put_many_collapses_repeated_sources(self, store: CorrelationStore) -> None:
        written = store.put_many(
            "exec-1",
            "fact_order",
            [
                CorrelationWrite("O-1", "1"),
                CorrelationWrite("O-2", "2"),
                CorrelationWrite("O-1", "3"),
            ],
        )

        assert written == 2
        assert store.resolve_many("exec-1", "fact_order", ["O-1", "O-2"]) == {"O-1": "3", "O-2": "2"}

    def test_put_many_empty_batch(self, store: CorrelationStore) -> None:
        assert store.put_many("exec-1", "fact_order", []) == 0

    def test_large_batch_spans_chunks(self, store: CorrelationStore) -> None:
        writes = [CorrelationWrite(f"S-{i:05d}", str(i)) for i in range(1200)]

        assert store.put_many("exec-1", "fact_order", writes) == 1200
        resolved = store.resolve_many("exec-1", "fact_order", (w.source_id for w in writes))
        assert len(resolved) == 1200
        assert resolved["S-01199"] == "1199"


class TestLookups:
    def test_executions_are_isolated(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1001")
        store.put("exec-2", "dim_customer", "C-1", "9009")

        assert store.get_by_pair("exec-1", "dim_customer", "C-1").target_id == "1001"  # type: ignore[union-attr]
        assert store.get_by_pair("exec-2", "dim_customer", "C-1").target_id == "9009"  # type: ignore[union-attr]

    def test_resolve_many_omits_unknown(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1001")

        assert store.resolve_many("exec-1", "dim_customer", ["C-1", "C-404"]) == {"C-1": "1001"}

    def test_target_id_scoped_by_table(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "7")
        store.put("exec-1", "dim_product", "P-1", "7")

        assert store.get_by_target_id("exec-1", "7", table="dim_product").source_id == "P-1"  # type: ignore[union-attr]
        assert store.get_by_target_id("exec-1", "7").table_name == "dim_customer"  # type: ignore[union-attr]

    def test_list_for_table_pages(self, store: CorrelationStore) -> None:
        store.put_many("exec-1", "dim_product", [CorrelationWrite(f"P-{i}", str(i)) for i in range(5)])

        page = store.list_for_table("exec-1", "dim_product", limit=2, offset=2)

        assert [entry.source_id for entry in page] == ["P-2", "P-3"]

    def test_stats_per_table(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1", "D-1")
        store.put("exec-1", "dim_customer", "C-2", "2")
        store.put("exec-1", "fact_order", "O-1", "3")

        stats = store.stats_for("exec-1")

        assert stats.total == 3
        assert stats.by_table == {"dim_customer": 2, "fact_order": 1}
        assert stats.with_external_doc == 1

    def test_purge_only_touches_one_execution(self, store: CorrelationStore) -> None:
        store.put("exec-1", "dim_customer", "C-1", "1")
        store.put("exec-2", "dim_customer", "C-1", "1")

        assert store.purge("exec-1") == 1
        assert store.stats_for("exec-1").total == 0
        assert store.stats_for("exec-2").total == 1


class TestCorrelationHandle:
    def test_handle_is_bound_to_execution(self, store: CorrelationStore) -> None:
        handle = store.bind("exec-1", "crm")

        handle.put("dim_customer", "C-1", "1001")
        handle.put_many("dim_customer", {"C-2": "1002", "C-3": "1003"})

        assert handle.resolve_many("dim_customer", ["C-1", "C-2", "C-3"]) == {"C-1": "1001", "C-2": "1002", "C-3": "1003"}
        assert handle.get("dim_customer", "C-2").target_id == "1002"  # type: ignore[union-attr]
        assert handle.stats().total == 3
        assert store.stats_for("exec-2").total == 0
