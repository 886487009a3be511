"""
Clock helpers. All billing date math is naive UTC.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches the DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
