from datetime import datetime

import pytest

from chime.infrastructure.database import AppDatabase
from chime.tasks.task_service import TaskManager

WEBHOOK_URL = "https://hooks.example.com/robot/send?access_token=abc"


class FakeClock:
    """Settable wall clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 0, 5))


@pytest.fixture
def manager(db, clock) -> TaskManager:
    return TaskManager(db.task_repo, db.suspension_repo, db.plan_repo, clock=clock)


@pytest.fixture
def make_task(manager):
    """Create a stored task with rules and (by default) a notification config."""

    def _make(name, rules=(), notification=True, **fields) -> str:
        task_id = manager.create(name, **fields)
        for rule in rules:
            manager.add_rule(task_id, rule)
        if notification is True:
            manager.set_notification_config(task_id, {"webhook_url": WEBHOOK_URL})
        elif notification:
            manager.set_notification_config(task_id, notification)
        return task_id

    return _make
