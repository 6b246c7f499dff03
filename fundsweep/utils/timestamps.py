"""Timestamp coercion for the shapes the app has written over time."""

from datetime import datetime, timezone
from typing import Any, Optional


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a stored timestamp into an aware datetime.

    Handles native datetimes (including Firestore DatetimeWithNanoseconds),
    serialized {seconds, nanoseconds} / {_seconds, _nanoseconds} maps,
    epoch numbers and ISO-8601 strings. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if isinstance(seconds, (int, float)):
            return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
        return None
    if isinstance(value, (int, float)):
        # millisecond epochs from Date.now()
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def latest(values) -> Optional[datetime]:
    """Latest of the coercible timestamps in values, or None."""
    parsed = [dt for dt in (to_datetime(v) for v in values) if dt is not None]
    return max(parsed) if parsed else None
