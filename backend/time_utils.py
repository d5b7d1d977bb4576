"""
Time utilities for the Todo App backend.

This module provides a single source of truth for time operations.

Timestamps are stored and returned in UTC. Naive datetimes (from clients or
from SQLite, which drops offsets) are taken to be UTC already.

"Today" for statistics is the server's local calendar day; its bounds are
converted to UTC before they are compared with stored timestamps.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_day_bounds(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """
    Calculate the start of today and the start of tomorrow on the server's local calendar.

    Args:
        now: Reference instant (defaults to the current time)

    Returns:
        Tuple of (start_of_today, start_of_tomorrow) as UTC datetimes
    """
    local_now = (now or utc_now()).astimezone()
    start_of_today = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_tomorrow = start_of_today + timedelta(days=1)
    return start_of_today.astimezone(timezone.utc), start_of_tomorrow.astimezone(timezone.utc)

