"""DrainConsumer: bounded, synchronous queue drain for periodic invocation.

Deployments without a long-running worker call ``drain_once`` on a schedule.
Each call releases stalled claims, reconciles executions a crashed consumer
left behind, claims up to ``max_jobs`` waiting jobs and runs them one after
another. Claims are conditional updates, so overlapping
drain calls (and a persistent worker on the same database) never run the
same job twice.
"""

import hmac
import socket
import uuid

import structlog

from migraflow.contracts.errors import UnauthorizedError
from migraflow.contracts.models import DrainReport
from migraflow.core.config import DrainSettings
from migraflow.engine.executor import StageExecutor
from migraflow.engine.queue import JobQueue

slog = structlog.get_logger(__name__)


def consumer_id(prefix: str) -> str:
    """Unique id for one consumer instance, recorded on the jobs it claims."""
    return f"{prefix}-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class DrainConsumer:
    """Pulls a bounded batch of waiting jobs and executes them in-process."""

    def __init__(self, *, queue: JobQueue, executor: StageExecutor, settings: DrainSettings) -> None:
        self._queue = queue
        self._executor = executor
        self._settings = settings

    def authenticate(self, secret: str | None) -> None:
        """Check the caller's shared secret.

        Raises:
            UnauthorizedError: No secret configured, or the secret does not match
        """
        expected = self._settings.resolve_secret()
        if expected is None:
            raise UnauthorizedError(f"Drain is disabled: {self._settings.secret_env} is not set")
        if secret is None or not hmac.compare_digest(secret.encode(), expected.encode()):
            raise UnauthorizedError("Invalid drain secret")

    def drain_once(self, max_jobs: int | None = None, *, secret: str | None) -> DrainReport:
        """Process up to ``max_jobs`` waiting jobs synchronously.

        Args:
            max_jobs: Batch bound; defaults to ``drain.max_jobs``
            secret: Shared secret presented by the caller

        Returns:
            Counts of processed and failed jobs plus the waiting jobs left

        Raises:
            UnauthorizedError: The caller is not authenticated
        """
        self.authenticate(secret)
        limit = max_jobs if max_jobs is not None else self._settings.max_jobs
        consumer = consumer_id("drain")
        log = slog.bind(consumer_id=consumer)

        requeued = self._queue.requeue_stalled()
        recovered = self._executor.recover_orphaned()
        jobs = self._queue.dequeue_waiting_batch(limit, consumer_id=consumer)
        processed = 0
        failed = 0
        for job in jobs:
            # Stall recovery may have released a job while earlier ones ran.
            if not self._queue.heartbeat(job):
                log.warning("drain_job_claim_lost", job_id=job.job_id)
                continue
            processed += 1
            try:
                result = self._executor.run(job)
            except Exception:
                # The claim guard already reported the attempt; keep draining.
                log.exception("drain_job_crashed", job_id=job.job_id)
                failed += 1
                continue
            if not result.success:
                failed += 1

        report = DrainReport(
            processed=processed,
            failed=failed,
            remaining=self._queue.waiting_count(),
            requeued_stalled=requeued,
            recovered=recovered,
        )
        log.info("drain_finished", **report.to_dict())
        return report
