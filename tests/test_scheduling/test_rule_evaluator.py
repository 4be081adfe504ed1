"""Tests for rule evaluation."""

from datetime import date, datetime, timedelta

import pytest

from chime.scheduling.rule_evaluator import (
    RuleEvaluator,
    add_months,
    last_day_of_month,
    last_workday_of_month,
    matches_interval,
)
from chime.tasks.rules import IntervalConfig, parse_rule


@pytest.fixture
def evaluator():
    return RuleEvaluator()


def rule(**data):
    data.setdefault("execution_times", ["09:00"])
    return parse_rule(data)


class TestCalendarHelpers:
    def test_last_day_of_month(self):
        assert last_day_of_month(2024, 2) == 29
        assert last_day_of_month(2023, 2) == 28
        assert last_day_of_month(2024, 4) == 30

    def test_last_workday_moves_back_over_weekend(self):
        # 2024-03-31 is a Sunday
        assert last_workday_of_month(2024, 3) == 29

    def test_add_months_clamps(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)


class TestByDay:
    def test_no_day_mode_fires_every_day(self, evaluator):
        r = rule(rule_type="by_day")
        assert evaluator.applies_to(r, date(2024, 3, 1))
        assert evaluator.applies_to(r, date(2024, 3, 2))

    def test_every_day(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "every_day"})
        assert evaluator.applies_to(r, date(2024, 7, 14))

    def test_months_filter(self, evaluator):
        r = rule(rule_type="by_day", months=[1, 2])
        assert evaluator.applies_to(r, date(2024, 2, 10))
        assert not evaluator.applies_to(r, date(2024, 3, 1))

    def test_specific_days(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "specific_days", "days": [1, 15]})
        assert evaluator.applies_to(r, date(2024, 3, 15))
        assert not evaluator.applies_to(r, date(2024, 3, 16))

    def test_negative_day_counts_from_month_end(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "specific_days", "days": [-2]})
        assert evaluator.applies_to(r, date(2024, 2, 28))
        assert evaluator.applies_to(r, date(2023, 2, 27))
        assert not evaluator.applies_to(r, date(2024, 2, 29))

    def test_minus_one_fires_exactly_on_last_day_of_every_month(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "specific_days", "days": [-1]})
        day = date(2023, 1, 1)
        while day < date(2025, 1, 1):
            is_last = (day + timedelta(days=1)).month != day.month
            assert evaluator.applies_to(r, day) == is_last, day
            day += timedelta(days=1)

    def test_last_workday(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "last_workday"})
        assert evaluator.applies_to(r, date(2024, 3, 29))
        assert not evaluator.applies_to(r, date(2024, 3, 31))
        # 2024-04-30 is a Tuesday
        assert evaluator.applies_to(r, date(2024, 4, 30))

    def test_first_workday(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "first_workday"})
        # 2024-06-01 is a Saturday
        assert not evaluator.applies_to(r, date(2024, 6, 1))
        assert evaluator.applies_to(r, date(2024, 6, 3))

    def test_nth_workday(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "nth_workday", "n": 3})
        # Fri 1st, Mon 4th, Tue 5th
        assert evaluator.applies_to(r, date(2024, 3, 5))
        assert not evaluator.applies_to(r, date(2024, 3, 4))

    def test_exclude_weekends(self, evaluator):
        r = rule(rule_type="by_day", exclude={"weekends": True})
        assert not evaluator.applies_to(r, date(2024, 3, 2))
        assert evaluator.applies_to(r, date(2024, 3, 4))

    def test_exclude_dates(self, evaluator):
        r = rule(rule_type="by_day", exclude={"dates": ["2024-03-04"]})
        assert not evaluator.applies_to(r, date(2024, 3, 4))
        assert evaluator.applies_to(r, date(2024, 3, 5))


class TestByWeek:
    def test_no_weekdays_never_fires(self, evaluator):
        r = rule(rule_type="by_week")
        for offset in range(7):
            assert not evaluator.applies_to(r, date(2024, 3, 4) + timedelta(days=offset))

    def test_iso_weekdays(self, evaluator):
        r = rule(rule_type="by_week", day_mode={"weekdays": [1, 3]})
        assert evaluator.applies_to(r, date(2024, 3, 4))  # Monday
        assert not evaluator.applies_to(r, date(2024, 3, 5))
        assert evaluator.applies_to(r, date(2024, 3, 6))  # Wednesday

    def test_sunday_based_weekdays_are_normalized(self, evaluator):
        r = rule(rule_type="by_week", day_mode={"weekDays": [0, 6]})
        assert evaluator.applies_to(r, date(2024, 3, 3))  # Sunday
        assert evaluator.applies_to(r, date(2024, 3, 2))  # Saturday
        assert not evaluator.applies_to(r, date(2024, 3, 4))

    def test_workdays_mode(self, evaluator):
        r = rule(rule_type="by_week", day_mode={"mode": "weekdays"})
        assert evaluator.applies_to(r, date(2024, 3, 1))
        assert not evaluator.applies_to(r, date(2024, 3, 2))

    def test_first_occurrence(self, evaluator):
        r = rule(rule_type="by_week", day_mode={"weekdays": [1], "occurrence": "first"})
        assert evaluator.applies_to(r, date(2024, 3, 4))
        assert not evaluator.applies_to(r, date(2024, 3, 11))

    def test_last_occurrence(self, evaluator):
        r = rule(rule_type="by_week", day_mode={"weekdays": [1], "occurrence": "last"})
        assert evaluator.applies_to(r, date(2024, 3, 25))
        assert not evaluator.applies_to(r, date(2024, 3, 18))


class TestByMonth:
    def test_default_is_first_of_month(self, evaluator):
        r = rule(rule_type="by_month")
        assert evaluator.applies_to(r, date(2024, 3, 1))
        assert not evaluator.applies_to(r, date(2024, 3, 2))

    def test_legacy_day_of_month(self, evaluator):
        r = rule(rule_type="monthly", day_mode={"dayOfMonth": 15})
        assert evaluator.applies_to(r, date(2024, 5, 15))
        assert not evaluator.applies_to(r, date(2024, 5, 14))

    def test_weekday_in_month(self, evaluator):
        r = rule(rule_type="by_month", day_mode={"type": "weekday_in_month", "weekday": 2, "ordinal": 2})
        assert evaluator.applies_to(r, date(2024, 3, 12))
        assert not evaluator.applies_to(r, date(2024, 3, 5))

    def test_last_weekday_in_month(self, evaluator):
        r = rule(rule_type="by_month", day_mode={"type": "weekday_in_month", "weekday": 2, "ordinal": -1})
        assert evaluator.applies_to(r, date(2024, 3, 26))
        assert not evaluator.applies_to(r, date(2024, 3, 19))

    def test_last_day(self, evaluator):
        r = rule(rule_type="by_month", day_mode={"type": "last_day"})
        assert evaluator.applies_to(r, date(2023, 2, 28))
        assert not evaluator.applies_to(r, date(2024, 2, 28))


class TestByYear:
    def test_default_is_january_first(self, evaluator):
        r = rule(rule_type="by_year")
        assert evaluator.applies_to(r, date(2025, 1, 1))
        assert not evaluator.applies_to(r, date(2025, 1, 2))

    def test_month_and_day(self, evaluator):
        r = rule(rule_type="yearly", day_mode={"month": 12, "day": 25})
        assert evaluator.applies_to(r, date(2024, 12, 25))
        assert not evaluator.applies_to(r, date(2024, 11, 25))

    def test_february_29_only_in_leap_years(self, evaluator):
        r = rule(rule_type="by_year", day_mode={"month": 2, "day": 29})
        assert evaluator.applies_to(r, date(2024, 2, 29))
        assert not evaluator.applies_to(r, date(2023, 2, 28))


class TestByInterval:
    def test_every_three_days(self, evaluator):
        r = rule(rule_type="by_interval", interval_config={"interval": 3, "unit": "days"}, reference_date="2024-01-01")
        assert evaluator.applies_to(r, date(2024, 1, 4))
        assert not evaluator.applies_to(r, date(2024, 1, 5))

    def test_fires_on_reference_and_every_multiple(self, evaluator):
        ref = date(2024, 1, 1)
        r = rule(rule_type="by_interval", interval_config={"interval": 5, "unit": "days"}, reference_date=ref)
        fires = {ref + timedelta(days=5 * k) for k in range(30)}
        for offset in range(150):
            day = ref + timedelta(days=offset)
            assert evaluator.applies_to(r, day) == (day in fires), day

    def test_never_before_reference(self, evaluator):
        r = rule(rule_type="by_interval", interval_config={"interval": 1, "unit": "days"}, reference_date="2024-01-01")
        assert not evaluator.applies_to(r, date(2023, 12, 31))

    def test_weeks(self, evaluator):
        r = rule(rule_type="by_interval", interval_config={"interval": 2, "unit": "weeks"}, reference_date="2024-01-01")
        assert evaluator.applies_to(r, date(2024, 1, 15))
        assert not evaluator.applies_to(r, date(2024, 1, 8))
        assert not evaluator.applies_to(r, date(2024, 1, 16))

    def test_months_clamp_to_month_end(self):
        config = IntervalConfig(interval=1, unit="months")
        ref = date(2024, 1, 31)
        assert matches_interval(config, ref, date(2024, 2, 29))
        assert matches_interval(config, ref, date(2024, 3, 31))
        assert not matches_interval(config, ref, date(2024, 3, 29))

    def test_months_fire_once_per_step(self):
        config = IntervalConfig(interval=2, unit="months")
        ref = date(2024, 1, 29)
        assert matches_interval(config, ref, date(2024, 3, 29))
        assert not matches_interval(config, ref, date(2024, 3, 31))
        assert matches_interval(config, date(2023, 12, 29), date(2025, 2, 28))
        march = [d for d in range(1, 32) if matches_interval(config, ref, date(2024, 3, d))]
        assert march == [29]

    def test_years(self):
        config = IntervalConfig(interval=2, unit="years")
        ref = date(2020, 6, 1)
        assert matches_interval(config, ref, date(2022, 6, 1))
        assert not matches_interval(config, ref, date(2021, 6, 1))

    def test_legacy_reference_inside_interval_config(self, evaluator):
        r = rule(rule_type="interval", intervalConfig={"value": 2, "unit": "days", "referenceDate": "2024-03-01"})
        assert evaluator.applies_to(r, date(2024, 3, 3))
        assert not evaluator.applies_to(r, date(2024, 3, 4))


class TestSpecificDateAndCustom:
    def test_specific_dates(self, evaluator):
        r = rule(rule_type="specific_date", specific_dates=["2024-03-01", "2024-04-01"])
        assert evaluator.applies_to(r, date(2024, 4, 1))
        assert not evaluator.applies_to(r, date(2024, 5, 1))

    def test_custom_without_interval_never_fires(self, evaluator):
        r = rule(rule_type="custom")
        assert not evaluator.applies_to(r, date(2024, 3, 1))

    def test_custom_with_interval_behaves_like_by_interval(self, evaluator):
        r = rule(rule_type="custom", interval_config={"interval": 3, "unit": "days"}, reference_date="2024-01-01")
        assert evaluator.applies_to(r, date(2024, 1, 4))
        assert not evaluator.applies_to(r, date(2024, 1, 5))


class TestExecutionTimestamps:
    def test_combines_times_with_date(self, evaluator):
        r = rule(rule_type="by_day", execution_times=["18:30", "09:00"])
        assert evaluator.execution_timestamps(r, date(2024, 3, 1)) == [
            datetime(2024, 3, 1, 9, 0),
            datetime(2024, 3, 1, 18, 30),
        ]

    def test_empty_when_rule_does_not_apply(self, evaluator):
        r = rule(rule_type="by_month")
        assert evaluator.execution_timestamps(r, date(2024, 3, 2)) == []

    def test_empty_times_yield_no_timestamps(self, evaluator):
        r = rule(rule_type="by_day", execution_times=[])
        assert evaluator.applies_to(r, date(2024, 3, 1))
        assert evaluator.execution_timestamps(r, date(2024, 3, 1)) == []


class TestNextExecutionAndDescribe:
    def test_next_execution(self, evaluator):
        r = rule(rule_type="by_day", day_mode={"type": "specific_days", "days": [15]})
        assert evaluator.next_execution(r, date(2024, 3, 1)) == (date(2024, 3, 15), [datetime(2024, 3, 15, 9, 0)])

    def test_next_execution_is_strictly_after(self, evaluator):
        r = rule(rule_type="specific_date", specific_dates=["2024-03-01"])
        assert evaluator.next_execution(r, date(2024, 3, 1)) is None

    def test_describe(self, evaluator):
        assert evaluator.describe(rule(rule_type="by_day")) == "Every day at 09:00:00"
        assert evaluator.describe(rule(rule_type="by_week", day_mode={"weekdays": [1, 5]})) == "On Mon, Fri at 09:00:00"
        assert evaluator.describe(rule(rule_type="custom")).startswith("Custom rule (never fires)")

    def test_describe_worksheet_times_and_months(self, evaluator):
        text = evaluator.describe(rule(rule_type="by_month", execution_times=[], months=[1, 7]))
        assert text == "On the 1st of each month at worksheet times (only in Jan, Jul)"
