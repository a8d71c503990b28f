"""Datetime helpers: lax store timestamps in, aware UTC datetimes out."""

from __future__ import annotations

from datetime import UTC, datetime

import pendulum


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_store_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a timestamp reported by the asset store.

    The store reports ISO 8601 strings such as ``2026-02-02T22:21:29Z``; webhook
    payloads occasionally omit the offset. Missing offsets are read as UTC.
    Unparseable input yields None rather than failing the whole descriptor.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    value_str = value.strip()
    if not value_str:
        return None
    try:
        parsed = pendulum.parse(value_str, tz="UTC", strict=False)
    except ValueError:
        return None
    if isinstance(parsed, pendulum.DateTime):
        return ensure_utc(parsed)
    if isinstance(parsed, pendulum.Date):
        # pendulum.parse returns Date for date-only strings
        return ensure_utc(pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC"))
    return None


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    return ensure_utc(dt).isoformat()
