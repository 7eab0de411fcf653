"""
Time helpers

All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 with a trailing Z, or None"""
    return value.isoformat() + 'Z' if value else None


def from_timestamp(value) -> Optional[datetime]:
    """Unix timestamp (seconds) to naive UTC, None for empty/invalid input"""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
