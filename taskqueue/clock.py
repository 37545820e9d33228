"""
Time helpers.

All persisted timestamps are naive UTC so that comparisons behave the same
on PostgreSQL and SQLite.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def date_bucket(value: datetime) -> str:
    """Day bucket used in cache keys (YYYY-MM-DD)."""
    return value.date().isoformat()


def week_start_bucket(value: datetime) -> str:
    """Sunday-based week bucket used in cache keys (YYYY-MM-DD)."""
    days_since_sunday = (value.weekday() + 1) % 7
    return (value - timedelta(days=days_since_sunday)).date().isoformat()
