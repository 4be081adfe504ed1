"""Per-row content source: message times and text keyed by task, date, and time."""

from __future__ import annotations

import sqlite3
from datetime import date
from typing import Protocol, runtime_checkable

from chime.tasks.rules import format_clock_time, parse_clock_time


@runtime_checkable
class RowSource(Protocol):
    def times_for(self, task_id: str, day: date) -> list[str]: ...

    def lookup_message_for_time(self, task_id: str, day: date, at: str) -> str | None: ...


class WorksheetRowRepository:
    """Rows imported from worksheets, stored one per (task, date, time)."""

    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def add_row(self, task_id: str, day: date, at: str, content: str) -> None:
        self._db.execute(
            """INSERT OR REPLACE INTO worksheet_rows (task_id, row_date, row_time, content)
               VALUES (?, ?, ?, ?)""",
            (task_id, day.isoformat(), format_clock_time(parse_clock_time(at)), content),
        )
        self._db.commit()

    def times_for(self, task_id: str, day: date) -> list[str]:
        rows = self._db.execute(
            "SELECT row_time FROM worksheet_rows WHERE task_id = ? AND row_date = ? ORDER BY row_time",
            (task_id, day.isoformat()),
        ).fetchall()
        return [row["row_time"] for row in rows]

    def lookup_message_for_time(self, task_id: str, day: date, at: str) -> str | None:
        row = self._db.execute(
            "SELECT content FROM worksheet_rows WHERE task_id = ? AND row_date = ? AND row_time = ?",
            (task_id, day.isoformat(), format_clock_time(parse_clock_time(at))),
        ).fetchone()
        if not row or not row["content"].strip():
            return None
        return row["content"]
