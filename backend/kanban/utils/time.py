"""UTC helpers.

All times are UTC and persisted as ISO 8601 text with a Z suffix so that
lexical and chronological ordering agree.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current UTC datetime, timezone-aware."""
    return datetime.now(UTC)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as ISO 8601 with microsecond precision and Z suffix.

    Output format: YYYY-MM-DDTHH:MM:SS.ffffffZ
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    utc_dt = dt.astimezone(UTC)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(s: str) -> datetime:
    """Parse an ISO 8601 timestamp with Z suffix back to UTC datetime."""
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def not_before(now: datetime, floor: str | None) -> datetime:
    """Clamp ``now`` so it is never earlier than the stored ``floor``.

    Keeps a card's stage-entered timestamp monotonic even if the host
    clock steps backwards.
    """
    if floor is None:
        return now
    floor_dt = parse_timestamp(floor)
    return floor_dt if now < floor_dt else now


def seconds_between(start: str, end: str) -> int:
    """Whole seconds from ``start`` to ``end`` (both formatted timestamps)."""
    delta = parse_timestamp(end) - parse_timestamp(start)
    return round(delta.total_seconds())
