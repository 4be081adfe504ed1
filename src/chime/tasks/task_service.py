"""Task manager: lifecycle and administrative edits, persisted through the aggregate."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from chime.infrastructure.config import CANCEL_PENDING_ON_PAUSE, local_now
from chime.infrastructure.logger import logger
from chime.scheduling.errors import ConfigurationError
from chime.scheduling.plan_repository import PlanRepository
from chime.scheduling.rule_evaluator import RuleEvaluator
from chime.tasks.aggregate import TaskAggregate
from chime.tasks.repository import SuspensionRepository, TaskRepository
from chime.tasks.types import NotificationConfig, Task, new_id


def build_task(data: dict[str, Any]) -> Task:
    try:
        return Task.model_validate({"id": new_id("task"), **data})
    except ValidationError as err:
        raise ConfigurationError(
            "Invalid task", {"name": data.get("name"), "errors": [e["msg"] for e in err.errors()]}
        ) from err


class TaskManager:
    def __init__(
        self,
        task_repo: TaskRepository,
        suspension_repo: SuspensionRepository,
        plan_repo: PlanRepository,
        cancel_pending_on_pause: bool = CANCEL_PENDING_ON_PAUSE,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._task_repo = task_repo
        self._suspension_repo = suspension_repo
        self._plan_repo = plan_repo
        self._cancel_pending_on_pause = cancel_pending_on_pause
        self._clock = clock
        self._evaluator = RuleEvaluator()

    # --- CRUD ---

    def create(self, name: str, **fields: Any) -> str:
        task = build_task({"name": name, **fields})
        self.register(TaskAggregate(task))
        return task.id

    def register(self, aggregate: TaskAggregate) -> None:
        """Persist a new, already validated aggregate."""
        self._task_repo.create_task(aggregate.task)
        for rule in aggregate.rules:
            self._task_repo.save_rule(rule)
        for association in aggregate.associations:
            self._task_repo.save_association(association)
        if aggregate.notification_config is not None:
            self._task_repo.set_notification_config(aggregate.notification_config)
        logger.info("Task registered", task_id=aggregate.id, name=aggregate.task.name, rules=len(aggregate.rules))

    def get_by_id(self, id: str) -> Task | None:
        return self._task_repo.get_task_by_id(id)

    def get_all(self) -> list[Task]:
        return self._task_repo.get_all_tasks()

    def load(self, id: str) -> TaskAggregate:
        task = self._task_repo.get_task_by_id(id)
        if not task:
            raise ValueError(f"Task not found: {id}")
        return TaskAggregate.from_store(
            task,
            self._task_repo.load_rules(id),
            self._task_repo.load_associations(id),
            self._task_repo.get_notification_config(id),
        )

    def delete(self, id: str) -> None:
        self._task_repo.delete_task(id)

    # --- Rules, associations, notification ---

    def add_rule(self, task_id: str, rule: dict[str, Any]) -> str:
        aggregate = self.load(task_id)
        accepted = aggregate.add_rule({"id": new_id("rule"), **rule})
        return self._task_repo.save_rule(accepted)

    def remove_rule(self, task_id: str, rule_id: str) -> bool:
        aggregate = self.load(task_id)
        removed = aggregate.remove_rule(rule_id)
        if removed:
            self._task_repo.delete_rule(rule_id)
        return removed

    def add_association(self, task_id: str, association: dict[str, Any]) -> str:
        aggregate = self.load(task_id)
        accepted = aggregate.add_association({"id": new_id("assoc"), **association})
        other_id = accepted.other(task_id)
        if not self._task_repo.get_task_by_id(other_id):
            raise ConfigurationError("Associated task not found", {"task_id": task_id, "other_task_id": other_id})
        return self._task_repo.save_association(accepted)

    def remove_association(self, task_id: str, association_id: str) -> bool:
        aggregate = self.load(task_id)
        removed = aggregate.remove_association(association_id)
        if removed:
            self._task_repo.delete_association(association_id)
        return removed

    def set_notification_config(self, task_id: str, config: dict[str, Any]) -> NotificationConfig:
        aggregate = self.load(task_id)
        accepted = aggregate.set_notification_config(config)
        self._task_repo.set_notification_config(accepted)
        return accepted

    def describe_rules(self, task_id: str) -> list[str]:
        aggregate = self.load(task_id)
        today = self._clock().date()
        lines = []
        for rule in aggregate.rules:
            text = self._evaluator.describe(rule)
            upcoming = self._evaluator.next_execution(rule, today)
            if upcoming:
                text += f"; next on {upcoming[0].isoformat()}"
            lines.append(text)
        return lines

    # --- Lifecycle ---

    def pause(self, id: str) -> int:
        return self._change_status(id, "pause")

    def resume(self, id: str) -> int:
        return self._change_status(id, "resume")

    def expire(self, id: str) -> int:
        return self._change_status(id, "expire")

    def lift_suspension(self, id: str) -> None:
        """End a priority suspension early; the task is a candidate again from the next cycle."""
        self._suspension_repo.clear(id)
        logger.info("Suspension lifted", task_id=id)

    def _change_status(self, id: str, action: str) -> int:
        """Apply a lifecycle action. Returns the number of pending entries cancelled."""
        aggregate = self.load(id)
        getattr(aggregate, action)()
        self._task_repo.update_task_status(id, aggregate.task.status)

        if action == "resume" or not self._cancel_pending_on_pause:
            return 0
        cancelled = self._plan_repo.cancel_pending_for_task(id, self._clock().date(), f"Task {aggregate.task.status}")
        if cancelled:
            logger.info("Cancelled pending plan entries", task_id=id, count=cancelled, status=aggregate.task.status)
        return cancelled
