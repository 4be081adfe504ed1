"""Schedule rule types.

A rule is one variant of a tagged union keyed by ``rule_type``. Each variant
carries only its own configuration fields and rejects anything else, so a rule
that reaches the evaluator is structurally valid for its type.

Raw payloads may use the historical shapes (``{mode, values}`` day modes,
camelCase keys, ``daily``/``weekly`` aliases); ``parse_rule`` normalizes them
before validation.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from chime.scheduling.errors import ConfigurationError

RuleType = Literal["by_day", "by_week", "by_month", "by_year", "by_interval", "specific_date", "custom"]

RULE_TYPE_ALIASES: dict[str, str] = {
    "daily": "by_day",
    "weekly": "by_week",
    "monthly": "by_month",
    "yearly": "by_year",
    "interval": "by_interval",
}

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def parse_clock_time(value: str) -> time:
    """Parse HH:MM or HH:MM:SS."""
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time format: {value}")
    return time(int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))


def format_clock_time(value: time) -> str:
    return value.strftime("%H:%M:%S")


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# --- Day-of-month modes ---


class EveryDay(_Frozen):
    type: Literal["every_day"] = "every_day"


class SpecificDays(_Frozen):
    type: Literal["specific_days"] = "specific_days"
    days: list[int]  # 1..31, or -1..-31 counting back from month end

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("Specific days must be a non-empty list")
        invalid = [d for d in value if d == 0 or d < -31 or d > 31]
        if invalid:
            raise ValueError(f"Invalid days: {invalid} (use 1..31, or -1 for the last day)")
        return value


class LastDay(_Frozen):
    type: Literal["last_day"] = "last_day"


class FirstWorkday(_Frozen):
    type: Literal["first_workday"] = "first_workday"


class LastWorkday(_Frozen):
    type: Literal["last_workday"] = "last_workday"


class NthWorkday(_Frozen):
    type: Literal["nth_workday"] = "nth_workday"
    n: int = Field(ge=1, le=23)


class WeekdayInMonth(_Frozen):
    """The n-th occurrence of a weekday in the month; ordinal -1 is the last one."""

    type: Literal["weekday_in_month"] = "weekday_in_month"
    weekday: int = Field(ge=1, le=7)  # 1=Mon..7=Sun
    ordinal: int

    @field_validator("ordinal")
    @classmethod
    def _check_ordinal(cls, value: int) -> int:
        if value not in (1, 2, 3, 4, 5, -1):
            raise ValueError("Ordinal must be 1..5 or -1 (last)")
        return value


DayMode = Annotated[
    Union[EveryDay, SpecificDays, LastDay, FirstWorkday, LastWorkday, NthWorkday, WeekdayInMonth],
    Field(discriminator="type"),
]


def _normalize_day_mode(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    data = dict(raw)
    if data.pop("everyDay", None) is True:
        return {"type": "every_day"}
    if "mode" in data and "type" not in data:
        data["type"] = data.pop("mode")
    if "values" in data and "days" not in data:
        data["days"] = data.pop("values")
    # Older records call the n-th working day "nth_weekday"
    if data.get("type") == "nth_weekday":
        return {"type": "nth_workday", "n": data.get("nthWeekday", data.get("n"))}
    for key in ("dayOfMonth", "day_of_month", "day"):
        if key in data and "type" not in data:
            return {"type": "specific_days", "days": [data.pop(key)]}
    return data


# --- Weekly mode ---

Occurrence = Literal["every", "first", "second", "third", "fourth", "last"]


class WeekMode(_Frozen):
    """Weekdays stored ISO-numbered (1=Mon..7=Sun).

    ``weekdays`` input is ISO-numbered; ``weekDays``/``week_days`` and the
    ``specific_weekdays`` mode use 0=Sun..6=Sat and are converted.
    """

    weekdays: list[int]
    occurrence: Occurrence = "every"

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        sunday_based = data.pop("weekDays", None)
        if sunday_based is None:
            sunday_based = data.pop("week_days", None)
        mode = data.pop("mode", None)
        values = data.pop("values", None)
        if mode == "weekdays":
            sunday_based = [1, 2, 3, 4, 5]
        elif mode == "specific_weekdays":
            sunday_based = values
        elif mode is not None:
            raise ValueError("Week mode must be one of: weekdays, specific_weekdays")

        if sunday_based is not None:
            if "weekdays" in data:
                raise ValueError("Give either weekdays (1=Mon..7=Sun) or weekDays (0=Sun..6=Sat), not both")
            if not isinstance(sunday_based, list) or any(
                not isinstance(d, int) or d < 0 or d > 6 for d in sunday_based
            ):
                raise ValueError("Invalid weekdays (0=Sunday, 1=Monday...6=Saturday)")
            data["weekdays"] = [7 if d == 0 else d for d in sunday_based]
        return data

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("Weekdays must be a non-empty list")
        invalid = [d for d in value if d < 1 or d > 7]
        if invalid:
            raise ValueError(f"Invalid weekdays (1=Monday...7=Sunday): {invalid}")
        return sorted(set(value))


# --- Yearly / interval / exclusions ---


class YearDay(_Frozen):
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)

    @model_validator(mode="after")
    def _check_day_in_month(self) -> YearDay:
        # Leap year so that Feb 29 is accepted; it only fires in leap years.
        if self.day > calendar.monthrange(2000, self.month)[1]:
            raise ValueError(f"Day {self.day} does not exist in month {self.month}")
        return self


class IntervalConfig(_Frozen):
    interval: int = Field(gt=0)
    unit: Literal["days", "weeks", "months", "years"]

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "value" in data and "interval" not in data:
            data = dict(data)
            data["interval"] = data.pop("value")
        return data


class ExcludeSettings(_Frozen):
    weekends: bool = False
    dates: list[date] = []

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "excludeWeekends" in data:
            data["weekends"] = data.pop("excludeWeekends")
        if "specificDates" in data:
            data["dates"] = data.pop("specificDates")
        # Holiday calendars are not modelled
        data.pop("excludeHolidays", None)
        return data


# --- Rule variants ---


class RuleBase(_Frozen):
    id: str | None = None
    task_id: str | None = None
    months: list[int] | None = None
    execution_times: list[str] = []
    exclude: ExcludeSettings | None = None

    @field_validator("months")
    @classmethod
    def _check_months(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return value
        if not value:
            raise ValueError("Months must be a non-empty list when specified")
        invalid = [m for m in value if m < 1 or m > 12]
        if invalid:
            raise ValueError(f"Invalid months: {invalid}")
        return sorted(set(value))

    @field_validator("execution_times")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        # Empty is allowed: times then come from the per-row content source.
        normalized = {format_clock_time(parse_clock_time(t)) for t in value}
        return sorted(normalized)

    @property
    def clock_times(self) -> list[time]:
        return [parse_clock_time(t) for t in self.execution_times]

    @property
    def uses_row_times(self) -> bool:
        return not self.execution_times


class ByDayRule(RuleBase):
    rule_type: Literal["by_day"] = "by_day"
    day_mode: DayMode | None = None  # None fires every day

    @field_validator("day_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        return _normalize_day_mode(value)


class ByWeekRule(RuleBase):
    rule_type: Literal["by_week"] = "by_week"
    day_mode: WeekMode | None = None  # None never fires


class ByMonthRule(RuleBase):
    rule_type: Literal["by_month"] = "by_month"
    day_mode: DayMode | None = None  # None fires on the 1st

    @field_validator("day_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        return _normalize_day_mode(value)

    @field_validator("day_mode")
    @classmethod
    def _reject_every_day(cls, value: Any) -> Any:
        if isinstance(value, EveryDay):
            raise ValueError("Monthly rules need a day-of-month or weekday-in-month pattern")
        return value


class ByYearRule(RuleBase):
    rule_type: Literal["by_year"] = "by_year"
    day_mode: YearDay | None = None  # None fires on Jan 1


class ByIntervalRule(RuleBase):
    rule_type: Literal["by_interval"] = "by_interval"
    interval_config: IntervalConfig
    reference_date: date


class SpecificDateRule(RuleBase):
    rule_type: Literal["specific_date"] = "specific_date"
    specific_dates: list[date]

    @field_validator("specific_dates")
    @classmethod
    def _check_dates(cls, value: list[date]) -> list[date]:
        if not value:
            raise ValueError("Specific dates must be provided for specific_date rule type")
        return sorted(set(value))


class CustomRule(RuleBase):
    rule_type: Literal["custom"] = "custom"
    interval_config: IntervalConfig | None = None
    reference_date: date | None = None


Rule = Union[ByDayRule, ByWeekRule, ByMonthRule, ByYearRule, ByIntervalRule, SpecificDateRule, CustomRule]

ScheduleRule = Annotated[Rule, Field(discriminator="rule_type")]

_rule_adapter: TypeAdapter[Any] = TypeAdapter(ScheduleRule)

_CAMEL_KEYS = {
    "ruleType": "rule_type",
    "dayMode": "day_mode",
    "weekMode": "day_mode",
    "intervalConfig": "interval_config",
    "intervalMode": "interval_config",
    "referenceDate": "reference_date",
    "specificDates": "specific_dates",
    "executionTimes": "execution_times",
    "excludeSettings": "exclude",
    "taskId": "task_id",
}


class StoredRule(BaseModel):
    """A rule as persisted: identity plus an unvalidated configuration payload."""

    id: str
    task_id: str
    rule_type: str
    config: dict[str, Any] = {}
    execution_times: list[str] = []

    def payload(self) -> dict[str, Any]:
        return {
            **self.config,
            "id": self.id,
            "task_id": self.task_id,
            "rule_type": self.rule_type,
            "execution_times": self.execution_times,
        }


def _normalize_payload(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        out[_CAMEL_KEYS.get(key, key)] = value

    rule_type = out.get("rule_type")
    if isinstance(rule_type, str):
        out["rule_type"] = RULE_TYPE_ALIASES.get(rule_type, rule_type)

    # referenceDate used to live inside the interval config
    interval = out.get("interval_config")
    if isinstance(interval, dict) and "referenceDate" in interval:
        interval = dict(interval)
        out.setdefault("reference_date", interval.pop("referenceDate"))
        out["interval_config"] = interval

    if out.get("rule_type") == "specific_date" and "specific_dates" not in out:
        day_mode = out.pop("day_mode", None)
        if isinstance(day_mode, dict) and "dates" in day_mode:
            out["specific_dates"] = day_mode["dates"]

    for key in [k for k, v in out.items() if v is None and k not in ("id", "task_id")]:
        del out[key]
    return out


def parse_rule(data: dict[str, Any] | StoredRule) -> Rule:
    """Validate a raw rule payload. Raises ConfigurationError on shape mismatch."""
    raw = data.payload() if isinstance(data, StoredRule) else data
    try:
        return _rule_adapter.validate_python(_normalize_payload(raw))
    except ValidationError as err:
        errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in err.errors()]
        raise ConfigurationError(
            "Invalid schedule rule",
            {"rule_id": raw.get("id"), "rule_type": raw.get("rule_type") or raw.get("ruleType"), "errors": errors},
        ) from err


def rule_config(rule: RuleBase) -> dict[str, Any]:
    """Type-specific configuration for storage (identity and times stripped)."""
    return rule.model_dump(mode="json", exclude={"id", "task_id", "rule_type", "execution_times"}, exclude_none=True)
