"""
Aggregation - Calendar Periods.

All periods are UTC.

- day:   calendar date, key "YYYY-MM-DD"
- week:  starts Sunday 00:00, key is the Sunday "YYYY-MM-DD"
- month: key "YYYY-MM"
- year:  key "YYYY"

A week belongs to the month (and year) its Sunday falls in.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Tuple

from .models import Granularity


def week_start(day: date) -> date:
    """Sunday on or before the day."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_start(day: date) -> date:
    return day.replace(day=1)


def year_start(day: date) -> date:
    return day.replace(month=1, day=1)


def period_start(granularity: Granularity, day: date) -> date:
    """First day of the period containing the day."""
    if granularity == Granularity.DAILY:
        return day
    if granularity == Granularity.WEEKLY:
        return week_start(day)
    if granularity == Granularity.MONTHLY:
        return month_start(day)
    return year_start(day)


def period_key(granularity: Granularity, start: date) -> str:
    """Key of the period that starts on the given day."""
    if granularity in (Granularity.DAILY, Granularity.WEEKLY):
        return start.isoformat()
    if granularity == Granularity.MONTHLY:
        return f"{start.year:04d}-{start.month:02d}"
    return f"{start.year:04d}"


def next_period_start(granularity: Granularity, start: date) -> date:
    """First day of the following period."""
    if granularity == Granularity.DAILY:
        return start + timedelta(days=1)
    if granularity == Granularity.WEEKLY:
        return start + timedelta(days=7)
    if granularity == Granularity.MONTHLY:
        if start.month == 12:
            return date(start.year + 1, 1, 1)
        return date(start.year, start.month + 1, 1)
    return date(start.year + 1, 1, 1)


def previous_period_start(granularity: Granularity, start: date) -> date:
    """First day of the preceding period."""
    if granularity == Granularity.DAILY:
        return start - timedelta(days=1)
    if granularity == Granularity.WEEKLY:
        return start - timedelta(days=7)
    if granularity == Granularity.MONTHLY:
        if start.month == 1:
            return date(start.year - 1, 12, 1)
        return date(start.year, start.month - 1, 1)
    return date(start.year - 1, 1, 1)


def last_periods(granularity: Granularity, count: int, today: date) -> List[Tuple[str, date]]:
    """
    The last `count` periods ending with the one containing today.

    Returns:
        (period_key, period_start) pairs in ascending calendar order
    """
    starts = []
    current = period_start(granularity, today)
    for _ in range(count):
        starts.append(current)
        current = previous_period_start(granularity, current)
    starts.reverse()
    return [(period_key(granularity, start), start) for start in starts]


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """[start, end) of a UTC day as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def iter_days(first: date, last: date) -> Iterator[date]:
    """Every day from first to last inclusive."""
    current = first
    while current <= last:
        yield current
        current += timedelta(days=1)


__all__ = [
    "week_start",
    "month_start",
    "year_start",
    "period_start",
    "period_key",
    "next_period_start",
    "previous_period_start",
    "last_periods",
    "day_bounds",
    "iter_days",
]
