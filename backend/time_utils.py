"""
Time utilities for the TaskFlow API.

This module provides a single source of truth for time operations,
ensuring consistency across routers and scheduled jobs, plus the date
arithmetic used to regenerate recurring tasks.
"""

import calendar
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


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes for DateTime(timezone=True) columns;
    those are stored as UTC, so a naive value is tagged as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if a task is overdue.

    A task is overdue if it has a due date in the past and is neither
    completed nor cancelled.

    Args:
        due_date: The task's due date
        status: The task's status

    Returns:
        True if task is overdue, False otherwise
    """
    if not due_date or status in ("completed", "cancelled"):
        return False
    return as_utc(due_date) < utc_now()


def day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC bounds of the day containing ``moment``."""
    start = as_utc(moment).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def add_months(value: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the end of the target month.

    Example:
        >>> add_months(datetime(2024, 1, 31), 1)
        datetime.datetime(2024, 2, 29, 0, 0)
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(previous: datetime, frequency: str, interval: int = 1) -> Optional[datetime]:
    """
    Compute the next due date of a recurring task.

    Args:
        previous: Due date of the occurrence that was just completed
        frequency: "daily", "weekly" or "monthly"
        interval: Number of frequency units between occurrences (>= 1)

    Returns:
        The next due date, or None for an unknown frequency
    """
    interval = max(1, int(interval or 1))
    if frequency == "daily":
        return previous + timedelta(days=interval)
    if frequency == "weekly":
        return previous + timedelta(weeks=interval)
    if frequency == "monthly":
        return add_months(previous, interval)
    return None
