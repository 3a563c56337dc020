"""Time helpers for UTC storage and comparison."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    Naive values are treated as UTC; some backends (SQLite) drop tzinfo on read.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_utc(value: datetime | None) -> datetime | None:
    """Normalize an optional datetime to aware UTC."""
    if value is None:
        return None
    return ensure_utc(value)
