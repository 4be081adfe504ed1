"""Task aggregate: a task together with its rules, associations and notification config."""

from __future__ import annotations

from datetime import datetime, time
from typing import Any

from pydantic import ValidationError

from chime.infrastructure.logger import logger
from chime.scheduling.errors import ConfigurationError, InvalidStateTransition
from chime.tasks.associations import Association, StoredAssociation, parse_association
from chime.tasks.rules import Rule, StoredRule, parse_rule
from chime.tasks.types import NotificationConfig, Task

_TRANSITIONS: dict[str, set[str]] = {
    "active": {"paused", "expired"},
    "paused": {"active", "expired"},
    "expired": set(),
}


class TaskAggregate:
    """Owns a task's identity and enforces its structural invariants.

    Mutators validate before accepting and raise ConfigurationError rather than
    storing malformed sub-objects. Associations are kept as plain id edges.
    """

    def __init__(
        self,
        task: Task,
        rules: list[Rule] | None = None,
        associations: list[Association] | None = None,
        notification_config: NotificationConfig | None = None,
    ) -> None:
        self.task = task
        self._rules: list[Rule] = []
        self._associations: list[Association] = []
        self.notification_config: NotificationConfig | None = None
        # Filled by from_store(); the planner reports these as configuration errors
        self.invalid_rules: list[ConfigurationError] = []
        self.invalid_associations: list[ConfigurationError] = []

        for rule in rules or []:
            self.add_rule(rule)
        for association in associations or []:
            self.add_association(association)
        if notification_config is not None:
            self.set_notification_config(notification_config)

    @classmethod
    def from_store(
        cls,
        task: Task,
        stored_rules: list[StoredRule],
        stored_associations: list[StoredAssociation],
        notification_config: NotificationConfig | None = None,
    ) -> TaskAggregate:
        """Build from persisted rows, collecting invalid sub-objects instead of raising."""
        aggregate = cls(task, notification_config=notification_config)
        for stored in stored_rules:
            try:
                aggregate.add_rule(parse_rule(stored))
            except ConfigurationError as err:
                aggregate.invalid_rules.append(err)
        for stored_assoc in stored_associations:
            try:
                aggregate._accept_association(parse_association(stored_assoc), check_duplicate=False)
            except ConfigurationError as err:
                aggregate.invalid_associations.append(err)
        return aggregate

    # --- Accessors ---

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def rules(self) -> tuple[Rule, ...]:
        return tuple(self._rules)

    @property
    def associations(self) -> tuple[Association, ...]:
        return tuple(self._associations)

    def associated_task_ids(self) -> set[str]:
        return {a.other(self.id) for a in self._associations}

    def earliest_execution_time(self) -> time | None:
        """Earliest declared clock time across all rules; None in worksheet mode."""
        times = [t for rule in self._rules for t in rule.clock_times]
        return min(times) if times else None

    # --- Activity ---

    def is_active(self, now: datetime) -> bool:
        if self.task.status != "active":
            return False
        if self.task.enable_time and now < self.task.enable_time:
            return False
        if self.task.disable_time and now > self.task.disable_time:
            return False
        return True

    def can_schedule_at(self, when: datetime) -> str | None:
        """Reason the task cannot be scheduled at `when`, or None if it can."""
        if not self.is_active(when):
            return "Task is not active at the specified time"
        if not self._rules:
            return "No schedule rules defined for task"
        return None

    # --- Mutators ---

    def add_rule(self, rule: Rule | dict[str, Any]) -> Rule:
        if isinstance(rule, dict):
            rule = parse_rule({"task_id": self.id, **rule})
        if rule.task_id is None:
            rule = rule.model_copy(update={"task_id": self.id})
        elif rule.task_id != self.id:
            raise ConfigurationError("Rule belongs to another task", {"task_id": self.id, "rule_task_id": rule.task_id})
        if rule.id is not None and any(r.id == rule.id for r in self._rules):
            raise ConfigurationError("Rule already exists", {"task_id": self.id, "rule_id": rule.id})

        self._rules.append(rule)
        self._touch()
        logger.debug("Schedule rule added to task", task_id=self.id, rule_type=rule.rule_type, rules=len(self._rules))
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        removed = len(self._rules) < before
        if removed:
            self._touch()
            logger.debug("Schedule rule removed from task", task_id=self.id, rule_id=rule_id)
        return removed

    def add_association(self, association: Association | dict[str, Any]) -> Association:
        if isinstance(association, dict):
            association = parse_association({"primary_task_id": self.id, **association})
        return self._accept_association(association, check_duplicate=True)

    def _accept_association(self, association: Association, check_duplicate: bool) -> Association:
        if association.primary_task_id == association.associated_task_id:
            raise ConfigurationError("Task cannot be associated with itself", {"task_id": self.id})
        if not association.involves(self.id):
            raise ConfigurationError(
                "Association does not reference this task",
                {"task_id": self.id, "association_id": association.id},
            )
        if check_duplicate and any(
            a.other(self.id) == association.other(self.id) and a.relationship_type == association.relationship_type
            for a in self._associations
        ):
            raise ConfigurationError(
                "Association already exists",
                {"task_id": self.id, "other_task_id": association.other(self.id)},
            )

        self._associations.append(association)
        self._touch()
        logger.debug(
            "Task association added",
            task_id=self.id,
            other_task_id=association.other(self.id),
            relationship_type=association.relationship_type,
        )
        return association

    def remove_association(self, association_id: str) -> bool:
        before = len(self._associations)
        self._associations = [a for a in self._associations if a.id != association_id]
        removed = len(self._associations) < before
        if removed:
            self._touch()
            logger.debug("Task association removed", task_id=self.id, association_id=association_id)
        return removed

    def set_notification_config(self, config: NotificationConfig | dict[str, Any]) -> NotificationConfig:
        if isinstance(config, dict):
            try:
                config = NotificationConfig.model_validate({"task_id": self.id, **config})
            except ValidationError as err:
                raise ConfigurationError(
                    "Invalid notification config",
                    {"task_id": self.id, "errors": [e["msg"] for e in err.errors()]},
                ) from err
        self.notification_config = config.model_copy(update={"task_id": self.id})
        self._touch()
        return self.notification_config

    # --- Lifecycle ---

    def pause(self) -> None:
        self._transition("paused")

    def resume(self) -> None:
        self._transition("active")

    def expire(self) -> None:
        self._transition("expired")

    def _transition(self, status: str) -> None:
        current = self.task.status
        if status == current:
            return
        if status not in _TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Cannot change task status from {current} to {status}",
                {"task_id": self.id, "from": current, "to": status},
            )
        self.task = self.task.model_copy(update={"status": status})
        self._touch()
        logger.info("Task status changed", task_id=self.id, name=self.task.name, status=status)

    def _touch(self) -> None:
        self.task.updated_at = datetime.now().isoformat()
