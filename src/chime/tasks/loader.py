"""Seed tasks from a YAML file.

Layout::

    groups:
      - {id: ops, name: Operations}
    tasks:
      - id: standup
        name: Daily standup
        priority: high
        group_id: ops
        rules:
          - {rule_type: by_day, execution_times: ["09:00"]}
        notification:
          webhook_url: https://hooks.example.com/robot/send?access_token=...
    associations:
      - {primary_task_id: standup, associated_task_id: retro, relationship_type: mutual_exclusive}

Everything is validated before anything is written.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from chime.infrastructure.logger import logger
from chime.scheduling.errors import ConfigurationError
from chime.tasks.aggregate import TaskAggregate
from chime.tasks.repository import TaskRepository
from chime.tasks.task_service import TaskManager, build_task
from chime.tasks.types import TaskGroup, new_id


def read_seed_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as err:
        raise ConfigurationError("Cannot read seed file", {"path": str(path), "error": str(err)}) from err
    if not isinstance(data, dict):
        raise ConfigurationError("Seed file must contain a mapping", {"path": str(path)})
    return data


def build_aggregates(data: dict[str, Any], known_task_ids: set[str] | None = None) -> list[TaskAggregate]:
    """Validate the tasks and associations of a seed document into aggregates."""
    aggregates: dict[str, TaskAggregate] = {}

    for index, raw in enumerate(data.get("tasks") or []):
        raw = dict(raw)
        rules = raw.pop("rules", None) or []
        notification = raw.pop("notification", None)
        task = build_task(raw)
        if task.id in aggregates:
            raise ConfigurationError("Duplicate task id in seed file", {"task_id": task.id, "index": index})

        aggregate = TaskAggregate(task)
        for rule in rules:
            aggregate.add_rule({"id": new_id("rule"), **rule})
        if notification:
            aggregate.set_notification_config(notification)
        aggregates[task.id] = aggregate

    known = set(aggregates) | (known_task_ids or set())
    for raw in data.get("associations") or []:
        primary = aggregates.get(raw.get("primary_task_id", ""))
        if primary is None:
            raise ConfigurationError(
                "Association primary task must be defined in the seed file",
                {"primary_task_id": raw.get("primary_task_id")},
            )
        association = primary.add_association({"id": new_id("assoc"), **raw})
        if association.associated_task_id not in known:
            raise ConfigurationError(
                "Associated task not found", {"associated_task_id": association.associated_task_id}
            )

    return list(aggregates.values())


def load_seed_file(path: Path, manager: TaskManager, task_repo: TaskRepository) -> list[str]:
    """Validate and store groups and tasks from `path`. Returns the created task ids."""
    data = read_seed_file(path)

    try:
        groups = [TaskGroup.model_validate(g) for g in data.get("groups") or []]
    except ValidationError as err:
        raise ConfigurationError("Invalid task group", {"errors": [e["msg"] for e in err.errors()]}) from err

    existing = {t.id for t in task_repo.get_all_tasks()}
    aggregates = build_aggregates(data, existing)
    clashes = [a.id for a in aggregates if a.id in existing]
    if clashes:
        raise ConfigurationError("Tasks already exist", {"task_ids": clashes})

    for group in groups:
        task_repo.set_group(group)
    for aggregate in aggregates:
        manager.register(aggregate)

    logger.info("Seed file loaded", path=str(path), groups=len(groups), tasks=len(aggregates))
    return [a.id for a in aggregates]
