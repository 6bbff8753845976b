"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All timestamps are written as timezone-aware UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def minutes_ago(minutes: int, now: Optional[datetime] = None) -> datetime:
    """
    Cutoff timestamp for age-based sweeps.

    Example:
        >>> minutes_ago(30, datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)).minute
        30
    """
    return (now or utcnow()) - timedelta(minutes=minutes)
