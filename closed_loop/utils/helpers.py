"""Shared time and parsing helpers.

utcnow:          timezone-aware "now" used by every model default and service
as_utc:          normalise DB datetimes (SQLite naive / PostgreSQL aware)
parse_datetime:  ISO-8601 input parsing for the HTTP boundary
"""
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime | None) -> str | None:
    """Serialize a stored datetime as UTC ISO-8601, or None."""
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def parse_datetime(value):
    """Parse an ISO-8601 timestamp, raising ValueError on bad input.

    Naive values are taken as UTC. A bare date means midnight UTC.
    Accepts a trailing ``Z`` as produced by most JSON serializers.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(
            f"Invalid datetime {value!r}. Use ISO-8601, e.g. 2025-01-31T09:00:00Z."
        ) from exc
