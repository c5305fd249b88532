# tests/engine/test_executor.py
"""Tests for StageExecutor: attempts, retries, error handling modes and cancellation."""

from collections.abc import Callable

import pytest

from migraflow.contracts import (
    ErrorHandlingMode,
    ExecutionCancelled,
    ExecutionStatus,
    JobState,
    PermanentError,
    StageName,
    StageRecord,
    StageResult,
    StageStatus,
    TransientError,
)
from migraflow.core.clock import MockClock
from migraflow.core.database import MigraflowDB
from migraflow.engine import MigraflowRuntime
from migraflow.plugins import StageContext
from tests.conftest import HandlerPlugin, ScriptedHandler, run_until_idle, seed_execution

RuntimeFactory = Callable[..., MigraflowRuntime]

DIM_CUSTOMER = "load-dimensions:dim_customer"
DIM_PRODUCT = "load-dimensions:dim_product"
FACT_ORDER = "load-facts:fact_order"


def _rows(runtime: MigraflowRuntime, execution_id: str) -> dict[str, StageRecord]:
    return {row.stage_id: row for row in runtime.ledger.list_for_execution(execution_id)}


def _status(runtime: MigraflowRuntime, execution_id: str) -> ExecutionStatus:
    execution = runtime.executions.get(execution_id)
    assert execution is not None
    return execution.status


class TestHappyPath:
    def test_all_stages_complete_in_order(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        plugin = HandlerPlugin()
        runtime = build_runtime(plugin)
        started = runtime.controller.start("crm")

        executed = run_until_idle(runtime, clock=clock)

        assert executed == 7
        rows = _rows(runtime, started.execution_id)
        assert all(row.status is StageStatus.COMPLETED for row in rows.values())
        assert _status(runtime, started.execution_id) is ExecutionStatus.COMPLETED
        execution = runtime.executions.get(started.execution_id)
        assert execution is not None
        assert execution.processed_records == 70
        assert execution.total_records == 70
        tables = [ctx.table.target_table for ctx in plugin[StageName.LOAD_DIMENSIONS].calls if ctx.table is not None]
        assert tables == ["dim_customer", "dim_product"]

    def test_next_group_waits_for_the_whole_group(self, build_runtime: RuntimeFactory) -> None:
        runtime = build_runtime()
        started = runtime.controller.start("crm")
        for _ in range(2):
            (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")
            runtime.executor.run(job)

        dims = runtime.queue.dequeue_waiting_batch(10, "c1")
        assert sorted(job.stage_id for job in dims) == [DIM_CUSTOMER, DIM_PRODUCT]
        runtime.executor.run(dims[0])

        assert runtime.queue.get_job(f"{started.execution_id}-{FACT_ORDER}") is None
        runtime.executor.run(dims[1])
        assert runtime.queue.get_job(f"{started.execution_id}-{FACT_ORDER}") is not None

    def test_context_carries_config_and_correlations(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        def load_dimension(context: StageContext) -> StageResult:
            assert context.table is not None
            context.require_correlations().put(context.table.target_table, "SRC-1", "TGT-1")
            return StageResult.ok(records_processed=1)

        def load_fact(context: StageContext) -> StageResult:
            resolved = context.require_correlations().resolve_many("dim_customer", ["SRC-1", "SRC-2"])
            return StageResult.ok(records_processed=len(resolved), resolved=resolved)

        plugin = HandlerPlugin(
            ScriptedHandler(StageName.LOAD_DIMENSIONS, [load_dimension]),
            ScriptedHandler(StageName.LOAD_FACTS, [load_fact]),
        )
        runtime = build_runtime(plugin, parallelism=2)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        extract_context = plugin[StageName.EXTRACT].calls[0]
        assert extract_context.correlations is None
        assert extract_context.table is None
        assert extract_context.config["parallelism"] == 2
        assert extract_context.error_handling is ErrorHandlingMode.FAIL_FAST
        assert extract_context.attempt == 1
        fact = _rows(runtime, started.execution_id)[FACT_ORDER]
        assert fact.metadata["resolved"] == {"SRC-1": "TGT-1"}
        assert runtime.correlations.stats_for(started.execution_id).by_table == {"dim_customer": 1, "dim_product": 1}


class TestRetries:
    def test_transient_failures_exhaust_retries(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [TransientError("connection reset by source")])
        runtime = build_runtime(HandlerPlugin(extract), retry_attempts=3)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        assert extract.call_count == 3
        job = runtime.queue.get_job(f"{started.execution_id}-extract")
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.attempts_made == 3
        rows = _rows(runtime, started.execution_id)
        assert rows["extract"].status is StageStatus.FAILED
        assert rows["extract"].error_message == "connection reset by source"
        assert rows["transform"].status is StageStatus.SKIPPED
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED

    def test_permanent_failure_is_not_retried(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [PermanentError("column customer_id missing")])
        runtime = build_runtime(HandlerPlugin(extract), retry_attempts=3)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        assert extract.call_count == 1
        job = runtime.queue.get_job(f"{started.execution_id}-extract")
        assert job is not None
        assert job.attempts_made == 1
        assert job.error_kind == "permanent"

    def test_retry_then_success(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [TimeoutError("read timed out"), StageResult.ok(records_processed=5)])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")

        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")
        runtime.executor.run(job)

        row = _rows(runtime, started.execution_id)["extract"]
        assert row.status is StageStatus.RUNNING
        assert row.metadata["last_error"]["kind"] == "transient"
        assert row.metadata["last_error"]["type"] == "TimeoutError"
        assert row.metadata["attempts_made"] == 1

        run_until_idle(runtime, clock=clock)

        assert [ctx.attempt for ctx in extract.calls] == [1, 2]
        assert _rows(runtime, started.execution_id)["extract"].status is StageStatus.COMPLETED
        assert _status(runtime, started.execution_id) is ExecutionStatus.COMPLETED

    def test_failure_result_is_permanent_unless_retryable(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [StageResult.failure("source returned 0 rows")])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        assert extract.call_count == 1
        assert _rows(runtime, started.execution_id)["extract"].error_message == "source returned 0 rows"

    def test_retryable_failure_result(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(
            StageName.EXTRACT,
            [StageResult.failure("throttled", retryable=True), StageResult.ok(records_processed=1)],
        )
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        assert extract.call_count == 2
        assert _status(runtime, started.execution_id) is ExecutionStatus.COMPLETED

    def test_handler_returning_wrong_type_fails(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [lambda context: {"ok": True}])  # type: ignore[list-item, return-value]
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        row = _rows(runtime, started.execution_id)["extract"]
        assert row.status is StageStatus.FAILED
        assert "expected StageResult" in (row.error_message or "")

    def test_missing_handler_is_permanent(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        plugin = HandlerPlugin()
        del plugin.handlers[StageName.VALIDATE]
        runtime = build_runtime(plugin)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows["validate"].status is StageStatus.FAILED
        assert "No stage handler registered for stage 'validate'" in (rows["validate"].error_message or "")
        assert rows["report"].status is StageStatus.SKIPPED


class TestErrorHandlingModes:
    def test_fail_fast_skips_downstream(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        dims = ScriptedHandler(StageName.LOAD_DIMENSIONS, tables={"dim_customer": [PermanentError("bad key")]})
        fact = ScriptedHandler(StageName.LOAD_FACTS)
        runtime = build_runtime(HandlerPlugin(dims, fact), error_handling=ErrorHandlingMode.FAIL_FAST)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows[DIM_CUSTOMER].status is StageStatus.FAILED
        # Claimed in the same batch, so it finishes its attempt
        assert rows[DIM_PRODUCT].status is StageStatus.COMPLETED
        for stage_id in (FACT_ORDER, "validate", "report"):
            assert rows[stage_id].status is StageStatus.SKIPPED
        assert fact.call_count == 0
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED

    def test_fail_fast_withdraws_unclaimed_siblings(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        dims = ScriptedHandler(StageName.LOAD_DIMENSIONS, tables={"dim_customer": [PermanentError("bad key")]})
        runtime = build_runtime(HandlerPlugin(dims))
        started = runtime.controller.start("crm")
        for _ in range(2):
            (done,) = runtime.queue.dequeue_waiting_batch(1, "c1")
            runtime.executor.run(done)

        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")
        assert job.stage_id == DIM_CUSTOMER
        runtime.executor.run(job)

        rows = _rows(runtime, started.execution_id)
        assert rows[DIM_PRODUCT].status is StageStatus.SKIPPED
        sibling = runtime.queue.get_job(f"{started.execution_id}-{DIM_PRODUCT}")
        assert sibling is not None
        assert sibling.state is JobState.FAILED
        assert runtime.queue.waiting_count() == 0
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED

    def test_continue_on_error_runs_downstream(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        dims = ScriptedHandler(StageName.LOAD_DIMENSIONS, tables={"dim_customer": [PermanentError("bad key")]})
        fact = ScriptedHandler(StageName.LOAD_FACTS)
        runtime = build_runtime(HandlerPlugin(dims, fact), error_handling=ErrorHandlingMode.CONTINUE_ON_ERROR)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows[DIM_CUSTOMER].status is StageStatus.FAILED
        for stage_id in (DIM_PRODUCT, FACT_ORDER, "validate", "report"):
            assert rows[stage_id].status is StageStatus.COMPLETED
        assert fact.call_count == 1
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED

    def test_skip_and_log_skips_failing_table(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        dims = ScriptedHandler(StageName.LOAD_DIMENSIONS, tables={"dim_customer": [PermanentError("bad key")]})
        runtime = build_runtime(HandlerPlugin(dims), error_handling=ErrorHandlingMode.SKIP_AND_LOG)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows[DIM_CUSTOMER].status is StageStatus.SKIPPED
        assert rows[DIM_CUSTOMER].error_message == "Skipped after error: bad key"
        assert rows["report"].status is StageStatus.COMPLETED
        assert _status(runtime, started.execution_id) is ExecutionStatus.COMPLETED

    def test_skip_and_log_whole_stage_failure_continues(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        transform = ScriptedHandler(StageName.TRANSFORM, [PermanentError("cleanse rule failed")])
        runtime = build_runtime(HandlerPlugin(transform), error_handling=ErrorHandlingMode.SKIP_AND_LOG)
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows["transform"].status is StageStatus.FAILED
        assert rows["report"].status is StageStatus.COMPLETED
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED


class TestCancellation:
    def test_cancel_observed_at_checkpoint(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        runtime: MigraflowRuntime

        def cancel_mid_load(context: StageContext) -> StageResult:
            runtime.controller.cancel(context.execution_id)
            context.checkpoint()
            return StageResult.ok(records_processed=99)

        dims = ScriptedHandler(StageName.LOAD_DIMENSIONS, [cancel_mid_load])
        fact = ScriptedHandler(StageName.LOAD_FACTS)
        runtime = build_runtime(HandlerPlugin(dims, fact))
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows["extract"].status is StageStatus.COMPLETED
        assert rows[DIM_CUSTOMER].status is StageStatus.FAILED
        assert rows[DIM_CUSTOMER].error_message == "Cancelled by user"
        assert rows[DIM_CUSTOMER].records_processed == 0
        assert rows["report"].error_message == "Cancelled by user"
        assert fact.call_count == 0
        assert _status(runtime, started.execution_id) is ExecutionStatus.CANCELLED
        assert runtime.queue.stats().waiting == 0

    def test_late_success_does_not_resurrect(self, build_runtime: RuntimeFactory) -> None:
        runtime = build_runtime()
        started = runtime.controller.start("crm")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        runtime.controller.cancel(started.execution_id)
        result = runtime.executor.run(job)

        assert not result.success
        assert result.error == "Cancelled by user"
        assert _rows(runtime, started.execution_id)["extract"].status is StageStatus.FAILED
        assert runtime.queue.stats().total == 1

    def test_handler_raised_cancellation_is_a_failure(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [ExecutionCancelled("source asked to stop")])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")

        run_until_idle(runtime, clock=clock)

        rows = _rows(runtime, started.execution_id)
        assert rows["extract"].error_message == "source asked to stop"
        assert rows["transform"].status is StageStatus.SKIPPED
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED


class TestClaimOwnership:
    def test_stale_claim_outcome_is_discarded(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [StageResult.ok(records_processed=3)])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")
        (slow,) = runtime.queue.dequeue_waiting_batch(1, "slow")
        clock.advance(3600)
        runtime.queue.requeue_stalled(timeout_seconds=60)
        (fast,) = runtime.queue.dequeue_waiting_batch(1, "fast")

        runtime.executor.run(slow)
        assert runtime.queue.get_job(f"{started.execution_id}-transform") is None

        runtime.executor.run(fast)
        assert runtime.queue.get_job(f"{started.execution_id}-transform") is not None
        execution = runtime.executions.get(started.execution_id)
        assert execution is not None
        assert execution.processed_records == 3

    def test_infrastructure_error_reported_by_guard(
        self, build_runtime: RuntimeFactory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        runtime = build_runtime()
        started = runtime.controller.start("crm")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        def broken(execution_id: str) -> bool:
            raise RuntimeError("disk full")

        monkeypatch.setattr(runtime.executions, "mark_running", broken)

        with pytest.raises(RuntimeError, match="disk full"):
            runtime.executor.run(job)

        stored = runtime.queue.get_job(job.job_id)
        assert stored is not None
        assert stored.state is JobState.FAILED
        assert _rows(runtime, started.execution_id)["extract"].error_message == "RuntimeError: disk full"

    def test_checkpoint_stops_handler_once_claim_is_taken(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        runtime: MigraflowRuntime
        reached: list[int] = []

        def stalled_extract(context: StageContext) -> StageResult:
            if not reached:
                clock.advance(3600)
                runtime.queue.requeue_stalled(timeout_seconds=60)
            context.checkpoint()
            reached.append(context.attempt)
            return StageResult.ok(records_processed=5)

        runtime = build_runtime(HandlerPlugin(ScriptedHandler(StageName.EXTRACT, [stalled_extract])))
        started = runtime.controller.start("crm")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "slow")

        result = runtime.executor.run(job)

        assert not result.success
        assert "was lost" in (result.error or "")
        assert reached == []
        stored = runtime.queue.get_job(job.job_id)
        assert stored is not None
        assert stored.state is JobState.WAITING
        assert stored.attempts_made == 0

        reached.append(0)
        (retaken,) = runtime.queue.dequeue_waiting_batch(1, "fast")
        assert runtime.executor.run(retaken).success
        execution = runtime.executions.get(started.execution_id)
        assert execution is not None
        assert execution.processed_records == 5

    def test_checkpoint_refreshes_claim(self, build_runtime: RuntimeFactory, clock: MockClock) -> None:
        runtime: MigraflowRuntime
        requeued: list[int] = []

        def long_extract(context: StageContext) -> StageResult:
            for _ in range(4):
                clock.advance(runtime.settings.queue.stall_timeout_seconds * 0.75)
                context.checkpoint()
                requeued.append(runtime.queue.requeue_stalled())
            return StageResult.ok(records_processed=1)

        extract = ScriptedHandler(StageName.EXTRACT, [long_extract])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        assert runtime.executor.run(job).success
        assert requeued == [0, 0, 0, 0]
        assert extract.call_count == 1
        assert _rows(runtime, started.execution_id)["extract"].status is StageStatus.COMPLETED


def _crash_once(monkeypatch: pytest.MonkeyPatch, target: object, name: str) -> list[tuple[object, ...]]:
    """Make ``target.name`` raise SystemExit on its first call, as if the process died there."""
    original = getattr(target, name)
    crashed: list[tuple[object, ...]] = []

    def wrapper(*args: object, **kwargs: object) -> object:
        if not crashed:
            crashed.append(args)
            raise SystemExit("consumer killed")
        return original(*args, **kwargs)

    monkeypatch.setattr(target, name, wrapper)
    return crashed


class TestCrashRecovery:
    def test_crash_before_next_group_enqueued(
        self, build_runtime: RuntimeFactory, clock: MockClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        runtime = build_runtime()
        started = runtime.controller.start("crm")
        crashed = _crash_once(monkeypatch, runtime.executor, "advance")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        with pytest.raises(SystemExit):
            runtime.executor.run(job)

        assert crashed
        assert runtime.queue.stats().waiting == 0
        assert _status(runtime, started.execution_id) is ExecutionStatus.RUNNING

        assert runtime.executor.recover_orphaned() == 1
        assert runtime.queue.get_job(f"{started.execution_id}-transform") is not None
        run_until_idle(runtime, clock=clock)
        assert _status(runtime, started.execution_id) is ExecutionStatus.COMPLETED
        assert runtime.executor.recover_orphaned() == 0

    def test_crash_before_success_projected(
        self, build_runtime: RuntimeFactory, clock: MockClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [StageResult.ok(records_processed=12, staged_tables=2)])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")
        _crash_once(monkeypatch, runtime.ledger, "complete")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        with pytest.raises(SystemExit):
            runtime.executor.run(job)
        assert runtime.queue.get_job(job.job_id).state is JobState.COMPLETED  # type: ignore[union-attr]
        assert _rows(runtime, started.execution_id)["extract"].status is StageStatus.RUNNING

        assert runtime.executor.recover_orphaned() == 1

        row = _rows(runtime, started.execution_id)["extract"]
        assert row.status is StageStatus.COMPLETED
        assert row.records_processed == 12
        assert row.metadata["staged_tables"] == 2
        run_until_idle(runtime, clock=clock)
        execution = runtime.executions.get(started.execution_id)
        assert execution is not None
        assert execution.status is ExecutionStatus.COMPLETED
        # extract's 12 plus 10 from each of the six default handlers
        assert execution.processed_records == 72
        assert extract.call_count == 1

    def test_crash_before_failure_projected(
        self, build_runtime: RuntimeFactory, clock: MockClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        extract = ScriptedHandler(StageName.EXTRACT, [PermanentError("source schema changed")])
        runtime = build_runtime(HandlerPlugin(extract))
        started = runtime.controller.start("crm")
        _crash_once(monkeypatch, runtime.executor, "_handle_failure")
        (job,) = runtime.queue.dequeue_waiting_batch(1, "c1")

        with pytest.raises(SystemExit):
            runtime.executor.run(job)

        assert runtime.executor.recover_orphaned() == 1
        rows = _rows(runtime, started.execution_id)
        assert rows["extract"].status is StageStatus.FAILED
        assert rows["extract"].error_message == "source schema changed"
        assert rows["transform"].status is StageStatus.SKIPPED
        assert _status(runtime, started.execution_id) is ExecutionStatus.FAILED

    def test_start_that_never_enqueued(self, build_runtime: RuntimeFactory, db: MigraflowDB, clock: MockClock) -> None:
        runtime = build_runtime()
        execution, _ = seed_execution(db, clock=clock)

        assert runtime.executor.recover_orphaned() == 1

        assert runtime.queue.waiting_count() == 1
        run_until_idle(runtime, clock=clock)
        assert _status(runtime, execution.execution_id) is ExecutionStatus.COMPLETED

    def test_moving_executions_are_left_alone(self, build_runtime: RuntimeFactory) -> None:
        runtime = build_runtime()
        runtime.controller.start("crm")
        runtime.queue.dequeue_waiting_batch(1, "c1")

        assert runtime.executor.recover_orphaned() == 0
        assert runtime.queue.stats().total == 1
