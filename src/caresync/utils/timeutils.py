"""Time helpers.

All timestamps inside CareSync are naive UTC datetimes so they compare and
serialize consistently across stores.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(raw))
