"""Scheduling domain types."""

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel

EntryStatus = Literal["pending", "executing", "completed", "failed", "skipped"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})

PlanStage = Literal["load", "resolve", "evaluate", "materialize", "emit"]

ReasonCode = Literal[
    "invalid_rule",
    "invalid_association",
    "suspended",
    "skipped_by_association",
    "resolution_deferred",
    "dependency_deferred",
    "no_rules",
    "no_execution_times",
    "no_notification_config",
    "invalid_notification_config",
    "lookup_failed",
    "template_failed",
    "task_error",
]


class ExecutionPlanEntry(BaseModel):
    id: int | None = None
    task_id: str
    rule_id: str
    scheduled_date: date
    scheduled_time: str  # HH:MM:SS
    message_content: str
    status: EntryStatus = "pending"
    priority: int = 50
    attempts: int = 0
    next_attempt_at: str | None = None
    first_attempt_at: str | None = None
    executed_at: str | None = None
    result: str | None = None
    last_error: str | None = None
    depends_on_task_id: str | None = None
    delay_minutes: int = 0
    created_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def key(self) -> tuple[str, str, date, str]:
        return (self.task_id, self.rule_id, self.scheduled_date, self.scheduled_time)


class PlanDiagnostic(BaseModel):
    """Why a task was excluded from, or held back in, a day's plan."""

    task_id: str
    stage: PlanStage
    reason_code: ReasonCode
    detail: str = ""


class PlanResult(BaseModel):
    plan_date: date
    lease_acquired: bool = True
    entries: list[ExecutionPlanEntry] = []
    inserted: int = 0
    diagnostics: list[PlanDiagnostic] = []

    def diagnostics_for(self, task_id: str) -> list[PlanDiagnostic]:
        return [d for d in self.diagnostics if d.task_id == task_id]
