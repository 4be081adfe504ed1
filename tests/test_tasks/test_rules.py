"""Tests for schedule rule parsing and normalization."""

from datetime import date

import pytest

from chime.scheduling.errors import ConfigurationError
from chime.tasks.rules import (
    ByDayRule,
    ByIntervalRule,
    ByWeekRule,
    EveryDay,
    NthWorkday,
    SpecificDays,
    StoredRule,
    parse_clock_time,
    parse_rule,
    rule_config,
)


class TestClockTimes:
    def test_accepts_hh_mm_and_seconds(self):
        assert parse_clock_time("9:05").isoformat() == "09:05:00"
        assert parse_clock_time("23:59:30").isoformat() == "23:59:30"

    @pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "12"])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError, match="Invalid time format"):
            parse_clock_time(value)

    def test_times_are_normalized_sorted_and_unique(self):
        rule = parse_rule({"rule_type": "by_day", "execution_times": ["18:00", "9:00", "09:00:00"]})
        assert rule.execution_times == ["09:00:00", "18:00:00"]

    def test_invalid_time_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid schedule rule"):
            parse_rule({"rule_type": "by_day", "execution_times": ["25:00"]})


class TestRuleTypes:
    def test_aliases(self):
        assert isinstance(parse_rule({"rule_type": "daily"}), ByDayRule)
        assert isinstance(parse_rule({"rule_type": "weekly"}), ByWeekRule)

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_rule({"id": "r1", "rule_type": "hourly"})
        assert exc_info.value.details["rule_id"] == "r1"

    def test_fields_of_another_type_are_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_day", "interval_config": {"interval": 1, "unit": "days"}})

    def test_interval_requires_reference_date(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_interval", "interval_config": {"interval": 2, "unit": "days"}})

    def test_interval_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            parse_rule(
                {"rule_type": "by_interval", "interval_config": {"interval": 0, "unit": "days"}, "reference_date": "2024-01-01"}
            )

    def test_specific_date_requires_dates(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "specific_date", "specific_dates": []})

    def test_monthly_rejects_every_day(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_month", "day_mode": {"type": "every_day"}})

    def test_year_day_must_exist(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_year", "day_mode": {"month": 2, "day": 30}})
        assert parse_rule({"rule_type": "by_year", "day_mode": {"month": 2, "day": 29}})

    def test_months_validated(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_day", "months": [13]})
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_day", "months": []})


class TestLegacyShapes:
    def test_camel_case_keys(self):
        rule = parse_rule(
            {"ruleType": "by_interval", "intervalConfig": {"interval": 1, "unit": "weeks"},
             "referenceDate": "2024-01-01", "executionTimes": ["08:00"]}
        )
        assert isinstance(rule, ByIntervalRule)
        assert rule.reference_date == date(2024, 1, 1)
        assert rule.execution_times == ["08:00:00"]

    def test_mode_values_day_mode(self):
        rule = parse_rule({"rule_type": "by_day", "dayMode": {"mode": "specific_days", "values": [1, -1]}})
        assert rule.day_mode == SpecificDays(days=[1, -1])

    def test_every_day_flag(self):
        rule = parse_rule({"rule_type": "by_day", "day_mode": {"everyDay": True}})
        assert rule.day_mode == EveryDay()

    def test_nth_weekday_is_nth_workday(self):
        rule = parse_rule({"rule_type": "by_day", "day_mode": {"mode": "nth_weekday", "nthWeekday": 2}})
        assert rule.day_mode == NthWorkday(n=2)

    def test_both_weekday_representations_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rule({"rule_type": "by_week", "day_mode": {"weekdays": [1], "weekDays": [1]}})

    def test_specific_weekdays_mode_is_sunday_based(self):
        rule = parse_rule({"rule_type": "by_week", "day_mode": {"mode": "specific_weekdays", "values": [0, 1]}})
        assert rule.day_mode.weekdays == [1, 7]

    def test_specific_date_in_day_mode(self):
        rule = parse_rule({"rule_type": "specific_date", "dayMode": {"dates": ["2024-03-02", "2024-03-01"]}})
        assert rule.specific_dates == [date(2024, 3, 1), date(2024, 3, 2)]

    def test_exclude_settings_aliases(self):
        rule = parse_rule(
            {"rule_type": "by_day", "excludeSettings": {"excludeWeekends": True, "excludeHolidays": True}}
        )
        assert rule.exclude.weekends is True


class TestStoredRule:
    def test_parse_stored_rule(self):
        stored = StoredRule(
            id="r1", task_id="t1", rule_type="by_day",
            config={"day_mode": {"type": "last_workday"}}, execution_times=["10:00"],
        )
        rule = parse_rule(stored)
        assert rule.id == "r1"
        assert rule.task_id == "t1"
        assert rule.execution_times == ["10:00:00"]

    def test_rule_config_strips_identity_and_times(self):
        rule = parse_rule({"id": "r1", "task_id": "t1", "rule_type": "by_week", "day_mode": {"weekdays": [2]},
                           "execution_times": ["10:00"]})
        assert rule_config(rule) == {"day_mode": {"weekdays": [2], "occurrence": "every"}}

    def test_rule_config_round_trips(self):
        rule = parse_rule({"id": "r1", "task_id": "t1", "rule_type": "by_day",
                           "day_mode": {"type": "nth_workday", "n": 3}, "execution_times": ["10:00"]})
        stored = StoredRule(id="r1", task_id="t1", rule_type=rule.rule_type, config=rule_config(rule),
                            execution_times=rule.execution_times)
        assert parse_rule(stored) == rule
