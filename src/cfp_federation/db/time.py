# src/cfp_federation/db/time.py
"""Time utilities for database models."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def epoch_millis(value: datetime | None = None) -> int:
    """Return ``value`` (default: now) as integer milliseconds since the epoch."""
    return int((value or utcnow()).timestamp() * 1000)
