"""Database operation helpers to reduce boilerplate in the stores.

Consolidates the repeated `with self._db.connection() as conn:` pattern and
routes writes through the contention retry.
"""

from typing import TYPE_CHECKING, Any

from sqlalchemy import Executable
from sqlalchemy.engine import Row

from migraflow.core.retry import run_with_contention_retry

if TYPE_CHECKING:
    from migraflow.core.database import MigraflowDB


class DatabaseOps:
    """Helper for common database operations."""

    def __init__(self, db: "MigraflowDB") -> None:
        self._db = db

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        """Execute query and return single row or None."""
        with self._db.connection() as conn:
            return conn.execute(query).fetchone()

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        """Execute query and return all rows."""
        with self._db.connection() as conn:
            return list(conn.execute(query).fetchall())

    def execute_scalar(self, query: Executable) -> Any:
        with self._db.connection() as conn:
            return conn.execute(query).scalar()

    def execute_write(self, stmt: Executable) -> int:
        """Execute a conditional write and return the affected row count.

        Zero is a legitimate outcome: conditional updates use it to signal
        that another consumer won the race.
        """

        def _run() -> int:
            with self._db.connection() as conn:
                return int(conn.execute(stmt).rowcount)

        return run_with_contention_retry(_run)
