"""Task, rule, association, notification config, and suspension persistence."""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime

from pydantic import ValidationError

from chime.scheduling.errors import ConfigurationError
from chime.tasks.associations import Association, StoredAssociation
from chime.tasks.rules import Rule, StoredRule, rule_config
from chime.tasks.types import NotificationConfig, Task, TaskGroup, TaskSuspension, new_id


def _safe_parse(raw: str | None, default: object) -> object:
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class TaskRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    # --- Groups ---

    def set_group(self, group: TaskGroup) -> None:
        self._db.execute(
            "INSERT OR REPLACE INTO task_groups (id, name, status) VALUES (?, ?, ?)",
            (group.id, group.name, group.status),
        )
        self._db.commit()

    def get_group(self, id: str) -> TaskGroup | None:
        row = self._db.execute("SELECT * FROM task_groups WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return TaskGroup(id=row["id"], name=row["name"], status=row["status"])

    # --- Tasks ---

    def create_task(self, task: Task) -> None:
        now = datetime.now().isoformat()
        self._db.execute(
            """INSERT INTO tasks
               (id, name, description, priority, status, enable_time, disable_time, group_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id, task.name, task.description, task.priority, task.status,
                _iso(task.enable_time), _iso(task.disable_time), task.group_id,
                task.created_at or now, task.updated_at or now,
            ),
        )
        self._db.commit()

    def get_task_by_id(self, id: str) -> Task | None:
        row = self._db.execute("SELECT * FROM tasks WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def get_all_tasks(self) -> list[Task]:
        rows = self._db.execute("SELECT * FROM tasks ORDER BY created_at").fetchall()
        return [self._row_to_task(row) for row in rows]

    def load_active_tasks(self, as_of: datetime) -> list[Task]:
        """Active tasks whose window covers `as_of` and whose group (if any) is active."""
        now = as_of.isoformat()
        rows = self._db.execute(
            """SELECT t.* FROM tasks t
               LEFT JOIN task_groups g ON g.id = t.group_id
               WHERE t.status = 'active'
                 AND (t.enable_time IS NULL OR t.enable_time <= ?)
                 AND (t.disable_time IS NULL OR t.disable_time >= ?)
                 AND (t.group_id IS NULL OR g.status = 'active')
               ORDER BY t.id""",
            (now, now),
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task_status(self, id: str, status: str) -> None:
        self._db.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (status, datetime.now().isoformat(), id),
        )
        self._db.commit()

    def delete_task(self, id: str) -> None:
        self._db.execute("DELETE FROM schedule_rules WHERE task_id = ?", (id,))
        self._db.execute(
            "DELETE FROM task_associations WHERE primary_task_id = ? OR associated_task_id = ?", (id, id)
        )
        self._db.execute("DELETE FROM notification_configs WHERE task_id = ?", (id,))
        self._db.execute("DELETE FROM task_suspensions WHERE task_id = ?", (id,))
        self._db.execute("DELETE FROM worksheet_rows WHERE task_id = ?", (id,))
        self._db.execute("DELETE FROM tasks WHERE id = ?", (id,))
        self._db.commit()

    # --- Rules ---

    def save_rule(self, rule: Rule | StoredRule) -> str:
        """Insert or replace a rule. Validated rules are stored as their type-specific config."""
        if isinstance(rule, StoredRule):
            rule_id, task_id, rule_type = rule.id, rule.task_id, rule.rule_type
            config, times = rule.config, rule.execution_times
        else:
            rule_id, task_id, rule_type = rule.id or new_id("rule"), rule.task_id, rule.rule_type
            config, times = rule_config(rule), rule.execution_times
        self._db.execute(
            """INSERT OR REPLACE INTO schedule_rules (id, task_id, rule_type, config, execution_times, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (rule_id, task_id, rule_type, json.dumps(config), json.dumps(times), datetime.now().isoformat()),
        )
        self._db.commit()
        return rule_id

    def load_rules(self, task_id: str) -> list[StoredRule]:
        rows = self._db.execute(
            "SELECT * FROM schedule_rules WHERE task_id = ? ORDER BY created_at, id", (task_id,)
        ).fetchall()
        return [
            StoredRule(
                id=row["id"],
                task_id=row["task_id"],
                rule_type=row["rule_type"],
                config=_safe_parse(row["config"], {}),  # type: ignore[arg-type]
                execution_times=_safe_parse(row["execution_times"], []),  # type: ignore[arg-type]
            )
            for row in rows
        ]

    def delete_rule(self, id: str) -> None:
        self._db.execute("DELETE FROM schedule_rules WHERE id = ?", (id,))
        self._db.commit()

    # --- Associations ---

    def save_association(self, association: Association | StoredAssociation) -> str:
        if isinstance(association, StoredAssociation):
            priority_rule = association.priority_rule
        else:
            priority_rule = (
                association.priority_rule
                if isinstance(association.priority_rule, dict)
                else association.priority_rule.model_dump(mode="json")
            )
        assoc_id = association.id or new_id("assoc")
        self._db.execute(
            """INSERT OR REPLACE INTO task_associations
               (id, primary_task_id, associated_task_id, relationship_type, priority_rule, suspend_duration, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                assoc_id, association.primary_task_id, association.associated_task_id,
                association.relationship_type, json.dumps(priority_rule), association.suspend_duration,
                association.created_at or datetime.now().isoformat(),
            ),
        )
        self._db.commit()
        return assoc_id

    def load_associations(self, task_id: str) -> list[StoredAssociation]:
        """Edges where the task is either the primary or the associated side."""
        rows = self._db.execute(
            """SELECT * FROM task_associations
               WHERE primary_task_id = ? OR associated_task_id = ?
               ORDER BY created_at, id""",
            (task_id, task_id),
        ).fetchall()
        return [
            StoredAssociation(
                id=row["id"],
                primary_task_id=row["primary_task_id"],
                associated_task_id=row["associated_task_id"],
                relationship_type=row["relationship_type"],
                priority_rule=_safe_parse(row["priority_rule"], {}),  # type: ignore[arg-type]
                suspend_duration=row["suspend_duration"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def delete_association(self, id: str) -> None:
        self._db.execute("DELETE FROM task_associations WHERE id = ?", (id,))
        self._db.commit()

    # --- Notification configs ---

    def set_notification_config(self, config: NotificationConfig) -> None:
        self._db.execute(
            """INSERT OR REPLACE INTO notification_configs
               (task_id, webhook_url, message_format, message_template, mentions, mention_all)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                config.task_id, config.webhook_url, config.message_format, config.message_template,
                json.dumps(config.mentions), 1 if config.mention_all else 0,
            ),
        )
        self._db.commit()

    def get_notification_config(self, task_id: str) -> NotificationConfig | None:
        row = self._db.execute("SELECT * FROM notification_configs WHERE task_id = ?", (task_id,)).fetchone()
        if not row:
            return None
        try:
            return NotificationConfig(
                task_id=row["task_id"],
                webhook_url=row["webhook_url"],
                message_format=row["message_format"],
                message_template=row["message_template"],
                mentions=_safe_parse(row["mentions"], []),  # type: ignore[arg-type]
                mention_all=bool(row["mention_all"]),
            )
        except ValidationError as err:
            raise ConfigurationError(
                "Invalid notification config",
                {"task_id": task_id, "errors": [e["msg"] for e in err.errors()]},
            ) from err

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            priority=row["priority"],
            status=row["status"],
            enable_time=row["enable_time"],
            disable_time=row["disable_time"],
            group_id=row["group_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class SuspensionRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def suspend(self, suspension: TaskSuspension) -> None:
        """Record a suspension. An existing one is only ever extended, never shortened."""
        self._db.execute(
            """INSERT INTO task_suspensions (task_id, suspended_from, suspended_until, reason)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(task_id) DO UPDATE SET
                   suspended_from = CASE WHEN excluded.suspended_until > suspended_until
                                         THEN excluded.suspended_from ELSE suspended_from END,
                   reason = CASE WHEN excluded.suspended_until > suspended_until
                                 THEN excluded.reason ELSE reason END,
                   suspended_until = MAX(suspended_until, excluded.suspended_until)""",
            (
                suspension.task_id, suspension.suspended_from.isoformat(),
                suspension.suspended_until.isoformat(), suspension.reason,
            ),
        )
        self._db.commit()

    def get_suspension(self, task_id: str) -> TaskSuspension | None:
        row = self._db.execute("SELECT * FROM task_suspensions WHERE task_id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return TaskSuspension(
            task_id=row["task_id"],
            suspended_from=row["suspended_from"],
            suspended_until=row["suspended_until"],
            reason=row["reason"],
        )

    def suspended_task_ids(self, on_date: date) -> set[str]:
        day = on_date.isoformat()
        rows = self._db.execute(
            "SELECT task_id FROM task_suspensions WHERE suspended_from <= ? AND suspended_until >= ?",
            (day, day),
        ).fetchall()
        return {row["task_id"] for row in rows}

    def clear(self, task_id: str) -> None:
        self._db.execute("DELETE FROM task_suspensions WHERE task_id = ?", (task_id,))
        self._db.commit()
