"""Common helper functions shared by the storage modules."""

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

E = TypeVar("E", bound=Enum)


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite.

    SQLite has no timezone-aware column type, so values written as aware UTC
    come back naive. PostgreSQL values are already aware and pass through.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    Invalid values raise ValueError - no silent coercion of our own data.
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)


def dumps(value: dict[str, Any] | None) -> str | None:
    """Serialize a JSON column value. Keys are sorted for stable storage."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def loads(value: str | None) -> dict[str, Any]:
    if value is None:
        return {}
    result: dict[str, Any] = json.loads(value)
    return result
