"""
UTC timestamp and identifier utilities (stdlib-only).

The store keeps every timestamp as TEXT in one fixed-width UTC ISO-8601
form (``2026-01-31T08:00:00.000000+00:00``). Because the width and the
offset never vary, string comparison in SQL (``next_run_time <= ?``,
``expires_at < ?``) orders exactly like the instants themselves.

Features:
    - **utc_now():** Timezone-aware UTC datetime
    - **to_iso8601() / from_iso8601():** Fixed-width storage round-trip
    - **new_id():** Random UUID4 string identifiers

Tags:
    timestamps, utc, datetime, jobspine, stdlib-only

STDLIB ONLY - NO PYDANTIC.
"""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to the fixed-width UTC storage string."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_iso8601(s: str | datetime | None) -> datetime | None:
    """Parse a stored ISO 8601 value to an aware UTC datetime."""
    if s is None:
        return None
    if isinstance(s, datetime):
        return ensure_utc(s)
    return ensure_utc(datetime.fromisoformat(s))


def new_id() -> str:
    """Generate a random identifier for jobs and executions."""
    return str(uuid4())
