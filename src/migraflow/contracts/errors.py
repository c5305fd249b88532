"""Error taxonomy and failure classification.

Every failure that crosses the stage executor is classified into an
ErrorKind before it reaches the job queue. Only TRANSIENT failures consume
a retry attempt.
"""

import re
from typing import ClassVar, TypedDict

from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from migraflow.contracts.enums import ErrorKind

CANCELLED_BY_USER = "Cancelled by user"


class StageErrorPayload(TypedDict):
    """Schema for the error details stored in stage metadata on retry."""

    kind: str
    message: str
    type: str
    attempt: int


class MigraflowError(Exception):
    """Base class for all classified errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.PERMANENT


class NotFoundError(MigraflowError):
    """A project, execution, mapping or job does not exist."""

    kind = ErrorKind.NOT_FOUND


class ValidationError(MigraflowError):
    """Required configuration is missing or malformed.

    Example: a project without a source or target connection.
    """

    kind = ErrorKind.VALIDATION


class TransientError(MigraflowError):
    """Failure expected to clear on its own (network, lock timeout)."""

    kind = ErrorKind.TRANSIENT


class PermanentError(MigraflowError):
    """Failure that will recur on retry (data or schema mismatch)."""

    kind = ErrorKind.PERMANENT


class ExecutionCancelled(MigraflowError):
    """Raised at a cancellation checkpoint once the user cancelled the run.

    Not an error path: it is terminal and never retried, but is recorded with
    a message for the audit trail.
    """

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = CANCELLED_BY_USER) -> None:
        super().__init__(message)


class ClaimLostError(MigraflowError):
    """Raised at a checkpoint once this consumer no longer holds the job.

    Stall recovery released the claim and another consumer may own the job
    now. The handler must stop; its outcome is discarded.
    """

    kind = ErrorKind.TRANSIENT

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Claim on job {job_id} was lost")


class UnauthorizedError(MigraflowError):
    """The caller of a protected surface (drain) failed authentication."""

    kind = ErrorKind.UNAUTHORIZED


class HandlerNotFoundError(PermanentError):
    """No stage handler is registered for a stage name."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"No stage handler registered for stage '{stage}'")


# Message patterns that indicate a transient condition in drivers that raise
# generic exceptions.
_TRANSIENT_PATTERNS = re.compile(
    r"timeout|timed out|deadlock|lock wait|database is locked|could not obtain lock|"
    r"connection (refused|reset|closed|lost)|econnrefused|econnreset|temporarily unavailable|too many connections",
    re.IGNORECASE,
)

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    DisconnectionError,
    PoolTimeoutError,
    ConnectionError,
    TimeoutError,
)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an arbitrary exception onto the error taxonomy.

    Classified errors keep their declared kind. Known transport failures and
    DBAPI errors that invalidated their connection are transient. Anything
    else is transient only if its message matches a known transient pattern,
    and permanent otherwise.

    Args:
        error: The exception raised by a stage handler

    Returns:
        The ErrorKind that decides retry behaviour
    """
    if isinstance(error, MigraflowError):
        return error.kind
    if isinstance(error, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return ErrorKind.TRANSIENT
    if _TRANSIENT_PATTERNS.search(str(error)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def describe_error(error: BaseException) -> str:
    """Render an exception as the message stored in the ledger."""
    message = str(error)
    if not message:
        return type(error).__name__
    if isinstance(error, MigraflowError):
        return message
    return f"{type(error).__name__}: {message}"
