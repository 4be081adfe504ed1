"""SQLite database schema and AppDatabase composition root."""

from __future__ import annotations

import sqlite3

from chime.infrastructure.config import STORE_DIR
from chime.infrastructure.logger import logger


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS task_groups (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active'
        );

        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            priority TEXT NOT NULL DEFAULT 'normal',
            status TEXT NOT NULL DEFAULT 'active',
            enable_time TEXT,
            disable_time TEXT,
            group_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES task_groups(id)
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);

        CREATE TABLE IF NOT EXISTS schedule_rules (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            rule_type TEXT NOT NULL,
            config TEXT NOT NULL DEFAULT '{}',
            execution_times TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            FOREIGN KEY (task_id) REFERENCES tasks(id)
        );
        CREATE INDEX IF NOT EXISTS idx_rules_task ON schedule_rules(task_id);

        CREATE TABLE IF NOT EXISTS task_associations (
            id TEXT PRIMARY KEY,
            primary_task_id TEXT NOT NULL,
            associated_task_id TEXT NOT NULL,
            relationship_type TEXT NOT NULL,
            priority_rule TEXT NOT NULL DEFAULT '{}',
            suspend_duration INTEGER,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_assoc_primary ON task_associations(primary_task_id);
        CREATE INDEX IF NOT EXISTS idx_assoc_associated ON task_associations(associated_task_id);

        CREATE TABLE IF NOT EXISTS notification_configs (
            task_id TEXT PRIMARY KEY,
            webhook_url TEXT NOT NULL,
            message_format TEXT NOT NULL DEFAULT 'text',
            message_template TEXT NOT NULL DEFAULT '',
            mentions TEXT NOT NULL DEFAULT '[]',
            mention_all INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (task_id) REFERENCES tasks(id)
        );

        CREATE TABLE IF NOT EXISTS task_suspensions (
            task_id TEXT PRIMARY KEY,
            suspended_from TEXT NOT NULL,
            suspended_until TEXT NOT NULL,
            reason TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS execution_plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            scheduled_date TEXT NOT NULL,
            scheduled_time TEXT NOT NULL,
            message_content TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            priority INTEGER NOT NULL DEFAULT 50,
            attempts INTEGER NOT NULL DEFAULT 0,
            next_attempt_at TEXT,
            first_attempt_at TEXT,
            claimed_at TEXT,
            executed_at TEXT,
            result TEXT,
            last_error TEXT,
            depends_on_task_id TEXT,
            delay_minutes INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            UNIQUE (task_id, rule_id, scheduled_date, scheduled_time)
        );
        CREATE INDEX IF NOT EXISTS idx_plans_due ON execution_plans(scheduled_date, status, scheduled_time);

        CREATE TABLE IF NOT EXISTS planning_leases (
            plan_date TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS worksheet_rows (
            task_id TEXT NOT NULL,
            row_date TEXT NOT NULL,
            row_time TEXT NOT NULL,
            content TEXT NOT NULL,
            PRIMARY KEY (task_id, row_date, row_time)
        );
    """)


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.task_repo: TaskRepository | None = None  # type: ignore[assignment]
        self.suspension_repo: SuspensionRepository | None = None  # type: ignore[assignment]
        self.plan_repo: PlanRepository | None = None  # type: ignore[assignment]
        self.lease_repo: LeaseRepository | None = None  # type: ignore[assignment]
        self.worksheet_repo: WorksheetRowRepository | None = None  # type: ignore[assignment]

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    def init(self) -> None:
        """Open (or create) the database file at the standard location."""
        db_path = STORE_DIR / "chime.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path))
        self._db.row_factory = sqlite3.Row
        self._init_repos()
        logger.debug("Database opened", path=str(db_path))

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = sqlite3.connect(":memory:")
        self._db.row_factory = sqlite3.Row
        self._init_repos()

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from chime.scheduling.plan_repository import LeaseRepository, PlanRepository
        from chime.scheduling.row_source import WorksheetRowRepository
        from chime.tasks.repository import SuspensionRepository, TaskRepository

        self.task_repo = TaskRepository(self._db)
        self.suspension_repo = SuspensionRepository(self._db)
        self.plan_repo = PlanRepository(self._db)
        self.lease_repo = LeaseRepository(self._db)
        self.worksheet_repo = WorksheetRowRepository(self._db)


# Singleton instance
database = AppDatabase()
