"""Datetime helpers for legacy payloads and database round-trips."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime | None) -> datetime | None:
    """Coerce to an aware UTC datetime (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_legacy_datetime(value: object | None) -> datetime | None:
    """Parse an ISO 8601 timestamp from the legacy API.

    Naive values are treated as UTC. Unparseable values return ``None`` rather
    than raising so one malformed field never fails a whole record.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_utc(parsed)


def format_legacy_datetime(value: datetime) -> str:
    """Render a datetime the way the legacy API expects in search filters."""
    return to_utc(value).isoformat().replace("+00:00", "Z")
