"""Timestamp helpers.

All engine timestamps are UTC. Some backends (SQLite) hand datetimes back
without tzinfo, so comparisons go through as_utc().
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when expires_at is set and not in the future."""
    if expires_at is None:
        return False
    return as_utc(expires_at) <= (now or utcnow())
