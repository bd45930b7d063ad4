"""
Time utilities for the nightly scoring pipeline.

All timestamps stored by the system are timezone-aware UTC datetimes
serialized as ISO-8601 strings. Keep conversions in this module so every
repository and event payload uses the same representation.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

# Fundamentals older than this are flagged stale.
DEFAULT_STALE_AFTER = timedelta(days=7)


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to an ISO-8601 string (``None`` passes through).

    Naive datetimes are assumed to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Accepts the trailing ``Z`` form written by SQLite's ``strftime``.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_stale(
    fetched_at: Optional[datetime],
    as_of: datetime,
    max_age: timedelta = DEFAULT_STALE_AFTER,
) -> bool:
    """Return True if data fetched at ``fetched_at`` is older than ``max_age``.

    Missing timestamps count as stale.
    """
    if fetched_at is None:
        return True
    return as_of - fetched_at > max_age


def elapsed_ms(started: float) -> int:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - started) * 1000)
