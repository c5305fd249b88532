"""Persistent worker: polls the queue and runs jobs on a thread pool.

The worker keeps at most ``worker.concurrency`` jobs in flight. Each poll
claims only as many jobs as there are free slots, so claimed jobs never wait
inside the process while another consumer could have run them. On SIGINT or
SIGTERM the worker stops claiming and waits for in-flight jobs to finish; a
second Ctrl-C force-kills.
"""

import signal
import threading
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from time import monotonic
from typing import Any

import structlog

from migraflow.contracts.models import Job, StageResult
from migraflow.core.config import WorkerSettings
from migraflow.engine.drain import consumer_id
from migraflow.engine.executor import StageExecutor
from migraflow.engine.queue import JobQueue

slog = structlog.get_logger(__name__)


@dataclass
class WorkerReport:
    """Totals for one worker run."""

    processed: int = 0
    failed: int = 0
    requeued_stalled: int = 0
    recovered: int = 0


class Worker:
    """Long-running queue consumer.

    Example:
        worker = Worker(queue=queue, executor=executor, settings=settings.worker)
        worker.run()                      # until SIGINT/SIGTERM
        worker.run(max_idle_polls=1)      # until the queue is drained
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        executor: StageExecutor,
        settings: WorkerSettings,
        stall_sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._queue = queue
        self._executor = executor
        self._settings = settings
        self._stall_sweep_interval = stall_sweep_interval_seconds
        self._stop = threading.Event()
        self._consumer_id = consumer_id("worker")

    @property
    def consumer_id(self) -> str:
        return self._consumer_id

    def stop(self) -> None:
        """Ask the run loop to exit after in-flight jobs finish."""
        self._stop.set()

    @contextmanager
    def _shutdown_handler_context(self) -> Iterator[threading.Event]:
        """Install SIGINT/SIGTERM handlers that set the stop event.

        Signal registration is skipped off the main thread; the event still
        works through ``stop()``.
        """
        if threading.current_thread() is not threading.main_thread():
            yield self._stop
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, frame: Any) -> None:
            slog.info("worker_shutdown_requested", signal=signum)
            self._stop.set()
            # Restore default SIGINT so second Ctrl-C force-kills
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield self._stop
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def run(self, *, max_idle_polls: int | None = None) -> WorkerReport:
        """Poll and execute jobs until stopped.

        Args:
            max_idle_polls: Exit after this many consecutive polls that found
                no work and had nothing in flight; None runs until stopped.
        """
        report = WorkerReport()
        concurrency = self._settings.concurrency
        in_flight: dict[Future[StageResult], Job] = {}
        idle_polls = 0
        last_sweep: float | None = None
        log = slog.bind(consumer_id=self._consumer_id, concurrency=concurrency)
        log.info("worker_started")

        with self._shutdown_handler_context() as stop, ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="migraflow-worker"
        ) as pool:
            while not stop.is_set():
                if last_sweep is None or monotonic() - last_sweep >= self._stall_sweep_interval:
                    # In-flight jobs belong to a live process; keep their claims fresh.
                    for job in in_flight.values():
                        self._queue.heartbeat(job)
                    report.requeued_stalled += self._queue.requeue_stalled()
                    report.recovered += self._executor.recover_orphaned()
                    last_sweep = monotonic()

                free = concurrency - len(in_flight)
                claimed = self._queue.dequeue_waiting_batch(free, self._consumer_id) if free > 0 else []
                for job in claimed:
                    in_flight[pool.submit(self._executor.run, job)] = job

                if in_flight:
                    idle_polls = 0
                    done, _ = wait(in_flight, timeout=self._settings.poll_interval_seconds, return_when=FIRST_COMPLETED)
                    for future in done:
                        self._collect(future, in_flight.pop(future), report, log)
                    continue

                idle_polls += 1
                if max_idle_polls is not None and idle_polls >= max_idle_polls:
                    break
                stop.wait(self._settings.poll_interval_seconds)

            for future in list(in_flight):
                self._collect(future, in_flight.pop(future), report, log)

        log.info("worker_stopped", processed=report.processed, failed=report.failed)
        return report

    @staticmethod
    def _collect(
        future: "Future[StageResult]",
        job: Job,
        report: WorkerReport,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        report.processed += 1
        try:
            result = future.result()
        except Exception:
            # The claim guard already reported the attempt.
            log.exception("worker_job_crashed", job_id=job.job_id)
            report.failed += 1
            return
        if not result.success:
            report.failed += 1
