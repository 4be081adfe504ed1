"""Rule evaluation: whether a rule fires on a date, and at which instants."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from chime.tasks.rules import (
    ByDayRule,
    ByIntervalRule,
    ByMonthRule,
    ByWeekRule,
    ByYearRule,
    CustomRule,
    EveryDay,
    FirstWorkday,
    IntervalConfig,
    LastDay,
    LastWorkday,
    NthWorkday,
    Rule,
    SpecificDateRule,
    SpecificDays,
    WeekdayInMonth,
    WeekMode,
)

_WEEKDAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
_MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
_OCCURRENCE_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4}


# --- Calendar helpers ---


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def is_weekend(day: date) -> bool:
    return day.isoweekday() >= 6


def workdays_in_month(year: int, month: int) -> list[int]:
    """Mon-Fri days of the month, ascending."""
    return [d for d in range(1, last_day_of_month(year, month) + 1) if date(year, month, d).isoweekday() <= 5]


def last_workday_of_month(year: int, month: int) -> int:
    day = date(year, month, last_day_of_month(year, month))
    while is_weekend(day):
        day -= timedelta(days=1)
    return day.day


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping to the last day of the target month."""
    years, month_index = divmod(day.month - 1 + months, 12)
    year = day.year + years
    month = month_index + 1
    return date(year, month, min(day.day, last_day_of_month(year, month)))


def _week_of_month(day: date) -> int:
    return (day.day - 1) // 7 + 1


def _is_last_of_weekday(day: date) -> bool:
    return day.day + 7 > last_day_of_month(day.year, day.month)


# --- Pattern matching ---


def matches_day_mode(mode: object, day: date) -> bool:
    last = last_day_of_month(day.year, day.month)

    if isinstance(mode, EveryDay):
        return True
    if isinstance(mode, SpecificDays):
        resolved = {d if d > 0 else last + d + 1 for d in mode.days}
        return day.day in resolved
    if isinstance(mode, LastDay):
        return day.day == last
    if isinstance(mode, FirstWorkday):
        return day.day == workdays_in_month(day.year, day.month)[0]
    if isinstance(mode, LastWorkday):
        return day.day == last_workday_of_month(day.year, day.month)
    if isinstance(mode, NthWorkday):
        workdays = workdays_in_month(day.year, day.month)
        return mode.n <= len(workdays) and day.day == workdays[mode.n - 1]
    if isinstance(mode, WeekdayInMonth):
        if day.isoweekday() != mode.weekday:
            return False
        if mode.ordinal == -1:
            return _is_last_of_weekday(day)
        return _week_of_month(day) == mode.ordinal
    return False


def matches_week_mode(mode: WeekMode | None, day: date) -> bool:
    # No weekday filter means no match, unlike by_day.
    if mode is None:
        return False
    if day.isoweekday() not in mode.weekdays:
        return False
    if mode.occurrence == "every":
        return True
    if mode.occurrence == "last":
        return _is_last_of_weekday(day)
    return _week_of_month(day) == _OCCURRENCE_INDEX[mode.occurrence]


def matches_interval(config: IntervalConfig, reference: date, day: date) -> bool:
    """True when day == reference + k * interval * unit for some k >= 0.

    Month and year steps clamp to the end of shorter months: a reference on the
    29th fires on Feb 28 in common years and on the 29th of every longer month.
    """
    if day < reference:
        return False

    if config.unit == "days":
        diff = (day - reference).days
    elif config.unit == "weeks":
        days = (day - reference).days
        if days % 7:
            return False
        diff = days // 7
    elif config.unit == "months":
        diff = (day.year - reference.year) * 12 + (day.month - reference.month)
        if add_months(reference, diff) != day:
            return False
    else:
        diff = day.year - reference.year
        if add_months(reference, diff * 12) != day:
            return False

    return diff >= 0 and diff % config.interval == 0


class RuleEvaluator:
    """Pure evaluation of schedule rules. Holds no state."""

    def applies_to(self, rule: Rule, day: date) -> bool:
        if rule.exclude:
            if rule.exclude.weekends and is_weekend(day):
                return False
            if day in rule.exclude.dates:
                return False

        if rule.months and day.month not in rule.months:
            return False

        if isinstance(rule, ByDayRule):
            return rule.day_mode is None or matches_day_mode(rule.day_mode, day)
        if isinstance(rule, ByWeekRule):
            return matches_week_mode(rule.day_mode, day)
        if isinstance(rule, ByMonthRule):
            if rule.day_mode is None:
                return day.day == 1
            return matches_day_mode(rule.day_mode, day)
        if isinstance(rule, ByYearRule):
            if rule.day_mode is None:
                return (day.month, day.day) == (1, 1)
            return (day.month, day.day) == (rule.day_mode.month, rule.day_mode.day)
        if isinstance(rule, ByIntervalRule):
            return matches_interval(rule.interval_config, rule.reference_date, day)
        if isinstance(rule, SpecificDateRule):
            return day in rule.specific_dates
        if isinstance(rule, CustomRule):
            if rule.interval_config and rule.reference_date:
                return matches_interval(rule.interval_config, rule.reference_date, day)
            return False
        return False

    def execution_timestamps(self, rule: Rule, day: date) -> list[datetime]:
        """Concrete instants for the day. Empty when the rule does not apply or has no times."""
        if not self.applies_to(rule, day):
            return []
        return [datetime.combine(day, t) for t in rule.clock_times]

    def next_execution(self, rule: Rule, after: date, horizon_days: int = 366) -> tuple[date, list[datetime]] | None:
        """First date strictly after `after` on which the rule fires with at least one time."""
        current = after + timedelta(days=1)
        for _ in range(horizon_days):
            stamps = self.execution_timestamps(rule, current)
            if stamps:
                return current, stamps
            current += timedelta(days=1)
        return None

    def describe(self, rule: Rule) -> str:
        """Human-readable summary for listings."""
        if isinstance(rule, ByDayRule):
            text = _describe_day_mode(rule.day_mode) if rule.day_mode else "Every day"
        elif isinstance(rule, ByWeekRule):
            if rule.day_mode is None:
                text = "Never (no weekdays selected)"
            else:
                names = ", ".join(_WEEKDAY_NAMES[d - 1] for d in rule.day_mode.weekdays)
                if rule.day_mode.occurrence == "every":
                    text = f"On {names}"
                else:
                    text = f"On the {rule.day_mode.occurrence} {names} of each month"
        elif isinstance(rule, ByMonthRule):
            text = _describe_day_mode(rule.day_mode) if rule.day_mode else "On the 1st of each month"
        elif isinstance(rule, ByYearRule):
            month, day = (rule.day_mode.month, rule.day_mode.day) if rule.day_mode else (1, 1)
            text = f"Every year on {_MONTH_NAMES[month - 1]} {day}"
        elif isinstance(rule, (ByIntervalRule, CustomRule)) and rule.interval_config:
            cfg = rule.interval_config
            unit = cfg.unit[:-1] if cfg.interval == 1 else cfg.unit
            text = f"Every {cfg.interval} {unit} from {rule.reference_date}"
        elif isinstance(rule, SpecificDateRule):
            text = "On " + ", ".join(d.isoformat() for d in rule.specific_dates)
        else:
            text = "Custom rule (never fires)"

        text += f" at {', '.join(rule.execution_times)}" if rule.execution_times else " at worksheet times"
        if rule.months and len(rule.months) < 12:
            text += f" (only in {', '.join(_MONTH_NAMES[m - 1] for m in rule.months)})"
        return text


def _describe_day_mode(mode: object) -> str:
    if isinstance(mode, EveryDay):
        return "Every day"
    if isinstance(mode, SpecificDays):
        return f"On days {', '.join(str(d) for d in mode.days)} of each month"
    if isinstance(mode, LastDay):
        return "On the last day of each month"
    if isinstance(mode, FirstWorkday):
        return "On the first workday of each month"
    if isinstance(mode, LastWorkday):
        return "On the last workday of each month"
    if isinstance(mode, NthWorkday):
        return f"On workday #{mode.n} of each month"
    if isinstance(mode, WeekdayInMonth):
        which = "last" if mode.ordinal == -1 else f"#{mode.ordinal}"
        return f"On the {which} {_WEEKDAY_NAMES[mode.weekday - 1]} of each month"
    return "Unknown day pattern"
