"""
Tests for calendar period arithmetic.
"""

from datetime import date, datetime, timezone

import pytest

from aggregation.models import Granularity
from aggregation.periods import (
    day_bounds,
    iter_days,
    last_periods,
    next_period_start,
    period_key,
    period_start,
    previous_period_start,
    week_start,
)


class TestWeekStart:

    @pytest.mark.parametrize("day, expected", [
        (date(2024, 3, 3), date(2024, 3, 3)),   # Sunday
        (date(2024, 3, 4), date(2024, 3, 3)),   # Monday
        (date(2024, 3, 9), date(2024, 3, 3)),   # Saturday
        (date(2024, 1, 2), date(2023, 12, 31)),  # crosses the year
    ])
    def test_weeks_start_on_sunday(self, day, expected):
        assert week_start(day) == expected


class TestPeriodKeys:

    def test_keys_per_granularity(self):
        day = date(2024, 3, 6)

        assert period_key(Granularity.DAILY, day) == "2024-03-06"
        assert period_key(Granularity.WEEKLY, period_start(Granularity.WEEKLY, day)) == "2024-03-03"
        assert period_key(Granularity.MONTHLY, period_start(Granularity.MONTHLY, day)) == "2024-03"
        assert period_key(Granularity.YEARLY, period_start(Granularity.YEARLY, day)) == "2024"

    def test_next_and_previous_wrap_the_year(self):
        assert next_period_start(Granularity.MONTHLY, date(2024, 12, 1)) == date(2025, 1, 1)
        assert previous_period_start(Granularity.MONTHLY, date(2024, 1, 1)) == date(2023, 12, 1)
        assert next_period_start(Granularity.WEEKLY, date(2024, 12, 29)) == date(2025, 1, 5)


class TestLastPeriods:

    def test_daily_across_leap_day(self):
        periods = last_periods(Granularity.DAILY, 3, date(2024, 3, 1))

        assert [key for key, _ in periods] == ["2024-02-28", "2024-02-29", "2024-03-01"]

    def test_monthly_across_year(self):
        periods = last_periods(Granularity.MONTHLY, 3, date(2024, 2, 10))

        assert [key for key, _ in periods] == ["2023-12", "2024-01", "2024-02"]

    def test_weekly_ascending(self):
        periods = last_periods(Granularity.WEEKLY, 2, date(2024, 3, 6))

        assert periods == [("2024-02-25", date(2024, 2, 25)), ("2024-03-03", date(2024, 3, 3))]

    def test_zero_count(self):
        assert last_periods(Granularity.YEARLY, 0, date(2024, 3, 6)) == []


class TestDayHelpers:

    def test_day_bounds_are_utc(self):
        start, end = day_bounds(date(2024, 3, 6))

        assert start == datetime(2024, 3, 6, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 7, tzinfo=timezone.utc)

    def test_iter_days_inclusive(self):
        assert list(iter_days(date(2024, 2, 28), date(2024, 3, 1))) == [
            date(2024, 2, 28),
            date(2024, 2, 29),
            date(2024, 3, 1),
        ]
