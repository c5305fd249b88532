# src/migraflow/core/clock.py
"""Clock abstraction for testable scheduling logic.

Backoff delays, stall detection and stage durations all read time through a
Clock so tests can advance it deterministically.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for scheduling decisions.

    Implementations:
    - SystemClock: wall clock in UTC plus time.monotonic() (production)
    - MockClock: Returns controllable times (testing)
    """

    def now(self) -> datetime:
        """Return the current timezone-aware UTC time.

        Used for everything persisted: available-at of delayed jobs, claim
        times, stage start/end times.
        """
        ...

    def monotonic(self) -> float:
        """Return monotonic time in seconds, for measuring durations."""
        ...


class SystemClock:
    """Production clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Allows tests to advance time programmatically without sleep().

    Example:
        clock = MockClock()
        queue = JobQueue(db, settings, clock=clock)

        queue.mark_failed(job, error, retryable=True)  # delayed by 5s
        assert queue.dequeue_waiting_batch(1, "w") == []
        clock.advance(5.0)
        assert len(queue.dequeue_waiting_batch(1, "w")) == 1
    """

    def __init__(self, start: datetime | None = None) -> None:
        """Initialize mock clock at a given time.

        Args:
            start: Initial wall-clock time (default 2024-01-01T00:00:00Z).
        """
        self._now = start if start is not None else datetime(2024, 1, 1, tzinfo=UTC)
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
