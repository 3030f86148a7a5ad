"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

SECONDS_PER_DAY = 86400.0


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_seconds_str(timestamp: Optional[Union[int, float, datetime]] = None) -> str:
    """Convert timestamp to seconds string format.

    Args:
        timestamp: Unix seconds or datetime (optional, uses current time if None)

    Returns:
        Seconds timestamp as string
    """
    if timestamp is None:
        timestamp = time.time()
    if isinstance(timestamp, datetime):
        timestamp = timestamp.timestamp()
    return str(int(timestamp))


def from_seconds_str(value: Optional[Union[str, int, float]]) -> Optional[datetime]:
    """Parse a seconds timestamp (as stored in the graph) into a UTC datetime."""
    if value in (None, ''):
        return None
    return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(earlier: Optional[datetime], later: datetime) -> float:
    """Fractional days from earlier to later, never negative."""
    if earlier is None:
        return 0.0
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    return max(0.0, (later - earlier).total_seconds() / SECONDS_PER_DAY)


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch."""
    return int(value.timestamp() * 1000)
