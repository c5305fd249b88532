# src/migraflow/core/retry.py
"""Retry helpers.

Two distinct retry concerns live here:

- Job backoff: how long a transiently failed job waits in ``delayed``
  before it is eligible again. Computed, never slept on.
- Storage contention: short in-process retries (via tenacity) around
  writes that hit SQLite "database is locked" or PostgreSQL serialization
  failures when several consumers claim jobs at once.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from migraflow.contracts.enums import BackoffType

T = TypeVar("T")

slog = structlog.get_logger(__name__)

_CONTENTION_MARKERS = ("database is locked", "database table is locked", "deadlock detected", "could not serialize access")


def backoff_delay_ms(
    attempts_made: int,
    *,
    base_delay_ms: int,
    backoff: BackoffType,
    max_delay_ms: int,
) -> int:
    """Delay before the next attempt of a job.

    Exponential backoff doubles per finished attempt: with a 5000ms base the
    delays after attempts 1, 2, 3 are 5000, 10000, 20000ms.

    Args:
        attempts_made: Finished attempts including the one that just failed (>= 1)
        base_delay_ms: Delay after the first failure
        backoff: Growth strategy
        max_delay_ms: Cap for a single delay
    """
    if attempts_made < 1:
        raise ValueError(f"attempts_made must be >= 1, got {attempts_made}")
    if backoff is BackoffType.FIXED:
        delay = base_delay_ms
    else:
        delay = base_delay_ms * (2 ** (attempts_made - 1))
    return min(delay, max_delay_ms)


def is_lock_contention(error: BaseException) -> bool:
    """True for storage errors caused by concurrent writers."""
    if not isinstance(error, OperationalError):
        return False
    message = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


@dataclass(frozen=True)
class ContentionRetryConfig:
    """Retry behaviour for contended storage writes.

    max_attempts is the TOTAL number of tries, not the number of retries.
    """

    max_attempts: int = 5
    initial_delay: float = 0.05  # seconds
    max_delay: float = 1.0  # seconds
    jitter: float = 0.05  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


def _log_contention(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    slog.debug(
        "storage_contention_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


def run_with_contention_retry(
    operation: Callable[[], T],
    config: ContentionRetryConfig | None = None,
) -> T:
    """Execute a storage operation, retrying on lock contention.

    Each call to ``operation`` must open its own transaction so a retry
    starts from a clean state. Non-contention errors propagate immediately.
    After the last attempt the contention error itself is re-raised.
    """
    cfg = config or ContentionRetryConfig()
    retrying = Retrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential_jitter(initial=cfg.initial_delay, max=cfg.max_delay, jitter=cfg.jitter),
        retry=retry_if_exception(is_lock_contention),
        before_sleep=_log_contention,
        reraise=True,
    )
    return retrying(operation)
