"""Execution plan persistence, entry claiming, and per-date planning leases."""

from __future__ import annotations

import sqlite3
import time
from datetime import date, datetime

from chime.scheduling.types import ExecutionPlanEntry


class PlanRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def persist_plan(self, entries: list[ExecutionPlanEntry]) -> int:
        """Insert new (task, rule, date, time) tuples in one transaction. Returns the number inserted.

        Tuples already present keep their row and status.
        """
        now = datetime.now().isoformat()
        before = self._db.total_changes
        try:
            self._db.executemany(
                """INSERT OR IGNORE INTO execution_plans
                   (task_id, rule_id, scheduled_date, scheduled_time, message_content, status, priority,
                    depends_on_task_id, delay_minutes, created_at)
                   VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)""",
                [
                    (
                        e.task_id, e.rule_id, e.scheduled_date.isoformat(), e.scheduled_time, e.message_content,
                        e.priority, e.depends_on_task_id, e.delay_minutes, now,
                    )
                    for e in entries
                ],
            )
            self._db.commit()
        except sqlite3.Error:
            self._db.rollback()
            raise
        return self._db.total_changes - before

    def get_plan(self, plan_date: date) -> list[ExecutionPlanEntry]:
        rows = self._db.execute(
            """SELECT * FROM execution_plans WHERE scheduled_date = ?
               ORDER BY scheduled_time, priority DESC, id""",
            (plan_date.isoformat(),),
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_entry(self, id: int) -> ExecutionPlanEntry | None:
        row = self._db.execute("SELECT * FROM execution_plans WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_entry(row)

    def get_task_entries(self, plan_date: date, task_id: str) -> list[ExecutionPlanEntry]:
        rows = self._db.execute(
            """SELECT * FROM execution_plans WHERE scheduled_date = ? AND task_id = ?
               ORDER BY scheduled_time, id""",
            (plan_date.isoformat(), task_id),
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_due_entries(self, now: datetime) -> list[ExecutionPlanEntry]:
        """Pending entries that should be attempted at `now`.

        Today's entries whose time has arrived and whose retry delay (if any) has
        elapsed, plus earlier days' entries with a retry that has come due.
        """
        stamp = now.isoformat()
        rows = self._db.execute(
            """SELECT * FROM execution_plans
               WHERE status = 'pending' AND (
                   (scheduled_date = ? AND scheduled_time <= ?
                    AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
                   OR (scheduled_date < ? AND next_attempt_at IS NOT NULL AND next_attempt_at <= ?)
               )
               ORDER BY scheduled_date, scheduled_time, priority DESC, id""",
            (now.date().isoformat(), now.strftime("%H:%M:%S"), stamp, now.date().isoformat(), stamp),
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def claim_entry(self, id: int, now: datetime) -> bool:
        """Atomically move a pending entry to executing. False if another worker got it first."""
        stamp = now.isoformat()
        result = self._db.execute(
            """UPDATE execution_plans
               SET status = 'executing', attempts = attempts + 1, claimed_at = ?,
                   first_attempt_at = COALESCE(first_attempt_at, ?)
               WHERE id = ? AND status = 'pending'""",
            (stamp, stamp, id),
        )
        self._db.commit()
        return result.rowcount > 0

    def update_entry_status(
        self,
        id: int,
        status: str,
        result: str | None = None,
        error: str | None = None,
        executed_at: datetime | None = None,
    ) -> None:
        self._db.execute(
            """UPDATE execution_plans
               SET status = ?, result = COALESCE(?, result), last_error = COALESCE(?, last_error),
                   executed_at = COALESCE(?, executed_at), next_attempt_at = NULL
               WHERE id = ?""",
            (status, result, error, executed_at.isoformat() if executed_at else None, id),
        )
        self._db.commit()

    def schedule_retry(self, id: int, next_attempt_at: datetime, error: str) -> None:
        self._db.execute(
            """UPDATE execution_plans
               SET status = 'pending', next_attempt_at = ?, last_error = ?
               WHERE id = ? AND status = 'executing'""",
            (next_attempt_at.isoformat(), error, id),
        )
        self._db.commit()

    def get_failed_entries(self, plan_date: date | None = None) -> list[ExecutionPlanEntry]:
        if plan_date is None:
            rows = self._db.execute(
                "SELECT * FROM execution_plans WHERE status = 'failed' ORDER BY scheduled_date, scheduled_time"
            ).fetchall()
        else:
            rows = self._db.execute(
                "SELECT * FROM execution_plans WHERE status = 'failed' AND scheduled_date = ? ORDER BY scheduled_time",
                (plan_date.isoformat(),),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def cancel_pending_for_task(self, task_id: str, plan_date: date, reason: str) -> int:
        result = self._db.execute(
            """UPDATE execution_plans SET status = 'skipped', result = ?
               WHERE task_id = ? AND scheduled_date = ? AND status = 'pending'""",
            (reason, task_id, plan_date.isoformat()),
        )
        self._db.commit()
        return result.rowcount

    def requeue_stale_executing(self, cutoff: datetime) -> int:
        """Return entries stuck in executing since before `cutoff` (e.g. after a crash) to pending."""
        result = self._db.execute(
            """UPDATE execution_plans SET status = 'pending'
               WHERE status = 'executing' AND (claimed_at IS NULL OR claimed_at < ?)""",
            (cutoff.isoformat(),),
        )
        self._db.commit()
        return result.rowcount

    def purge_before(self, cutoff: date) -> int:
        result = self._db.execute(
            "DELETE FROM execution_plans WHERE scheduled_date < ?", (cutoff.isoformat(),)
        )
        self._db.commit()
        return result.rowcount

    def _row_to_entry(self, row: sqlite3.Row) -> ExecutionPlanEntry:
        return ExecutionPlanEntry(
            id=row["id"],
            task_id=row["task_id"],
            rule_id=row["rule_id"],
            scheduled_date=row["scheduled_date"],
            scheduled_time=row["scheduled_time"],
            message_content=row["message_content"],
            status=row["status"],
            priority=row["priority"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
            first_attempt_at=row["first_attempt_at"],
            executed_at=row["executed_at"],
            result=row["result"],
            last_error=row["last_error"],
            depends_on_task_id=row["depends_on_task_id"],
            delay_minutes=row["delay_minutes"],
            created_at=row["created_at"],
        )


class LeaseRepository:
    """Per-date planning lease: compare-and-swap on an expiry timestamp."""

    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def try_acquire(self, plan_date: date, owner: str, ttl: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        result = self._db.execute(
            """INSERT INTO planning_leases (plan_date, owner, expires_at) VALUES (?, ?, ?)
               ON CONFLICT(plan_date) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
               WHERE planning_leases.expires_at < ? OR planning_leases.owner = excluded.owner""",
            (plan_date.isoformat(), owner, now + ttl, now),
        )
        self._db.commit()
        return result.rowcount > 0

    def release(self, plan_date: date, owner: str) -> None:
        self._db.execute(
            "DELETE FROM planning_leases WHERE plan_date = ? AND owner = ?", (plan_date.isoformat(), owner)
        )
        self._db.commit()
