"""Tests for database initialization and schema."""

from chime.infrastructure.database import AppDatabase


class TestAppDatabase:
    def test_init_creates_schema(self):
        db = AppDatabase()
        db._init_test()
        # Verify tables exist by querying them
        tables = db.db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()
        table_names = [row[0] for row in tables]
        assert "task_groups" in table_names
        assert "tasks" in table_names
        assert "schedule_rules" in table_names
        assert "task_associations" in table_names
        assert "notification_configs" in table_names
        assert "task_suspensions" in table_names
        assert "execution_plans" in table_names
        assert "planning_leases" in table_names
        assert "worksheet_rows" in table_names

    def test_repos_initialized(self):
        db = AppDatabase()
        db._init_test()
        assert db.task_repo is not None
        assert db.suspension_repo is not None
        assert db.plan_repo is not None
        assert db.lease_repo is not None
        assert db.worksheet_repo is not None

    def test_multiple_init_is_safe(self):
        db = AppDatabase()
        db._init_test()
        db._init_test()  # Should not raise

    def test_plan_entries_are_unique_per_slot(self):
        db = AppDatabase()
        db._init_test()
        insert = """INSERT OR IGNORE INTO execution_plans
                    (task_id, rule_id, scheduled_date, scheduled_time, message_content, created_at)
                    VALUES ('t1', 'r1', '2024-03-01', '09:00:00', 'hi', '')"""
        db.db.execute(insert)
        db.db.execute(insert)
        (count,) = db.db.execute("SELECT COUNT(*) FROM execution_plans").fetchone()
        assert count == 1
