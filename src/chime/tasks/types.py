"""Task domain types."""

from __future__ import annotations

import random
import re
import string
import time
from datetime import date, datetime
from typing import Any, Literal

from jinja2 import Environment, TemplateError, TemplateSyntaxError, Undefined
from pydantic import BaseModel, field_validator, model_validator

from chime.scheduling.errors import ConfigurationError

TaskPriority = Literal["high", "normal", "low"]
TaskStatus = Literal["active", "paused", "expired"]
GroupStatus = Literal["active", "disabled"]

PRIORITY_SCORES: dict[str, int] = {"high": 100, "normal": 50, "low": 25}


class _KeepUndefined(Undefined):
    """Renders an unknown placeholder back as `{{ name }}`."""

    __slots__ = ()

    def __str__(self) -> str:
        return "{{ %s }}" % (self._undefined_name or "")


_templates = Environment(undefined=_KeepUndefined, keep_trailing_newline=True, autoescape=False)


def priority_score(priority: str) -> int:
    return PRIORITY_SCORES.get(priority, PRIORITY_SCORES["normal"])


def new_id(prefix: str) -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{prefix}-{int(time.time())}-{rand}"


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Render a jinja2 message template.

    Unknown or None-valued placeholders are left in the output as `{{ name }}`.
    Raises ConfigurationError when the template cannot be rendered.
    """
    values = {key: value for key, value in variables.items() if value is not None}
    try:
        return _templates.from_string(template).render(**values)
    except TemplateError as err:
        raise ConfigurationError("Message template failed to render", {"error": str(err)}) from err


class TaskGroup(BaseModel):
    id: str
    name: str
    status: GroupStatus = "active"


class Task(BaseModel):
    id: str
    name: str
    description: str = ""
    priority: TaskPriority = "normal"
    status: TaskStatus = "active"
    enable_time: datetime | None = None  # Open bound when unset
    disable_time: datetime | None = None
    group_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Task name is required")
        if len(value) > 255:
            raise ValueError("Task name must be less than 255 characters")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> Task:
        if self.enable_time and self.disable_time and self.enable_time >= self.disable_time:
            raise ValueError("Enable time must be before disable time")
        return self

    @property
    def priority_score(self) -> int:
        return priority_score(self.priority)


class NotificationConfig(BaseModel):
    task_id: str | None = None
    webhook_url: str
    message_format: Literal["text", "markdown"] = "text"
    message_template: str = ""
    mentions: list[str] = []
    mention_all: bool = False

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not re.match(r"^https?://[^\s/]+", value.strip()):
            raise ValueError("Webhook URL must be an http(s) URL")
        return value.strip()

    @field_validator("message_template")
    @classmethod
    def _check_template(cls, value: str) -> str:
        if len(value) > 5000:
            raise ValueError("Message template must be less than 5000 characters")
        try:
            _templates.parse(value)
        except TemplateSyntaxError as err:
            raise ValueError(f"Message template has invalid syntax: {err.message}") from err
        return value

    @field_validator("mentions")
    @classmethod
    def _check_mentions(cls, value: list[str]) -> list[str]:
        if any(not m.strip() for m in value):
            raise ValueError("Mentions must be non-empty strings")
        return value

    def render(self, variables: dict[str, Any]) -> str | None:
        """Render the configured template, or None when no template is set."""
        if not self.message_template:
            return None
        return render_template(self.message_template, variables)


class TaskSuspension(BaseModel):
    task_id: str
    suspended_from: date
    suspended_until: date  # Inclusive
    reason: str = ""

    def covers(self, day: date) -> bool:
        return self.suspended_from <= day <= self.suspended_until
