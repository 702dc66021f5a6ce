"""Shared timestamp parsing helpers.

Session windows and commit timestamps arrive as ISO strings with mixed
offsets (``Z``, ``+02:00`` or none at all). Everything that compares them goes
through :func:`parse_timestamp` so comparisons happen on aware datetimes.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string, datetime or epoch number into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # Epoch milliseconds (history log) vs seconds
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            dt = datetime.fromisoformat(token.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def earliest(values: list[Any]) -> datetime | None:
    parsed = [dt for dt in (parse_timestamp(v) for v in values) if dt is not None]
    return min(parsed) if parsed else None
