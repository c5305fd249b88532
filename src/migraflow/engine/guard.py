# src/migraflow/engine/guard.py
"""JobClaimGuard - structural guarantee that a claimed job reports an outcome.

A claimed job that never reports back stays ``active`` until stall recovery
releases it, which delays the whole execution by the stall timeout. Handler
failures are converted to results by the executor, but the code around the
handler (ledger writes, context construction) can still raise.

JobClaimGuard encodes the invariant structurally: any unhandled exception
within the ``with`` block reports the attempt as failed before propagating.
"""

from types import TracebackType

import structlog

from migraflow.contracts.enums import ErrorKind, JobState
from migraflow.contracts.errors import classify_error, describe_error
from migraflow.contracts.models import Job, StageResult
from migraflow.core.ledger import StageLedger
from migraflow.engine.queue import JobQueue

slog = structlog.get_logger(__name__)


class JobClaimGuard:
    """Context manager that guarantees a claimed job leaves ``active``.

    Usage::

        with JobClaimGuard(queue, ledger, job) as guard:
            ... run the handler ...
            state = guard.complete()      # or guard.fail(message, kind)

    If an exception escapes before ``complete()``/``fail()`` is called, the
    attempt is reported as failed (retryable when the exception classifies
    as transient) and, when that failure is terminal, the ledger row is
    failed too. The original exception always propagates.
    """

    __slots__ = ("_job", "_ledger", "_queue", "_reported", "_state")

    def __init__(self, queue: JobQueue, ledger: StageLedger, job: Job) -> None:
        self._queue = queue
        self._ledger = ledger
        self._job = job
        self._reported = False
        self._state: JobState | None = None

    def __enter__(self) -> "JobClaimGuard":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._reported or exc_val is None:
            # Normal exit without a report is a programming error we don't mask.
            return

        kind = classify_error(exc_val)
        message = describe_error(exc_val)
        try:
            state = self._queue.mark_failed(self._job, message, retryable=kind.is_retryable, error_kind=kind)
            if state is JobState.FAILED:
                self._ledger.fail(self._job.execution_id, self._job.stage_id, message)
        except Exception:
            # If we cannot record the failure (e.g. DB is down), log but don't
            # mask the original exception. Stall recovery releases the job.
            slog.error(
                "job_guard_report_failed",
                job_id=self._job.job_id,
                original_error=type(exc_val).__name__,
                exc_info=True,
            )

    @property
    def reported(self) -> bool:
        return self._reported

    @property
    def state(self) -> JobState | None:
        """Queue state after the report; None before it or for a stale claim."""
        return self._state

    def complete(self, result: StageResult | None = None) -> JobState | None:
        self._state = self._queue.mark_completed(self._job, result)
        self._reported = True
        return self._state

    def fail(self, message: str, kind: ErrorKind) -> JobState | None:
        self._state = self._queue.mark_failed(self._job, message, retryable=kind.is_retryable, error_kind=kind)
        self._reported = True
        return self._state
