#!/usr/bin/env python3
"""
Read access to the habit tracker database, plus the one write the daemon
makes: recording a "missed" log when a deadline passes unresolved.

The API layer owns the schema; ensure_schema() only exists so a fresh
database (or a test) has the tables the daemon reads.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sqlite3
import uuid
from contextlib import closing
from typing import Dict, List, Optional

from habitguard.core.errors import StoreReadError, StoreWriteError
from habitguard.core.models import STATUS_MISSED, Habit, HabitLog, Settings, parse_time_of_day

BLOCKED_WEBSITES_KEY = "blockedWebsites"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS habits (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    start_time_utc TEXT,
    deadline_utc TEXT,
    active_days TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS habit_logs (
    id TEXT PRIMARY KEY,
    habit_id TEXT NOT NULL REFERENCES habits(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('completed', 'skipped', 'missed')),
    completed_at TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE UNIQUE INDEX IF NOT EXISTS habit_logs_habit_date ON habit_logs (habit_id, date);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


def _parse_active_days(raw: Optional[str]) -> frozenset:
    if not raw:
        return frozenset()
    days = json.loads(raw)
    if days is None:
        return frozenset()
    return frozenset(int(d) for d in days)


def _row_to_habit(row: sqlite3.Row) -> Habit:
    return Habit(
        id=row["id"],
        name=row["name"],
        start_time_utc=parse_time_of_day(row["start_time_utc"]),
        deadline_utc=parse_time_of_day(row["deadline_utc"]),
        active_days=_parse_active_days(row["active_days"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_log(row: sqlite3.Row) -> HabitLog:
    return HabitLog(
        id=row["id"],
        habit_id=row["habit_id"],
        date=dt.date.fromisoformat(row["date"]),
        status=row["status"],
        completed_at=row["completed_at"],
    )


class HabitStore:
    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = os.path.expanduser(str(db_path))
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def check_reachable(self) -> None:
        """Fail fast if the database file is missing or lacks the tables we read."""
        if not os.path.exists(self.db_path):
            raise StoreReadError(f"Database not found: {self.db_path}")
        self.get_settings()
        self.get_active_habits()

    # ---------- reads ----------

    def get_active_habits(self) -> List[Habit]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT id, name, start_time_utc, deadline_utc, active_days, is_active "
                    "FROM habits WHERE is_active = 1 ORDER BY id"
                ).fetchall()
            return [_row_to_habit(r) for r in rows]
        except (sqlite3.Error, ValueError) as e:
            raise StoreReadError(f"Failed to read habits: {e}") from e

    def get_today_log(self, habit_id: str, day: dt.date) -> Optional[HabitLog]:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT id, habit_id, date, status, completed_at FROM habit_logs "
                    "WHERE habit_id = ? AND date = ?",
                    (habit_id, day.isoformat()),
                ).fetchone()
            return _row_to_log(row) if row else None
        except (sqlite3.Error, ValueError) as e:
            raise StoreReadError(f"Failed to read log for habit {habit_id}: {e}") from e

    def get_today_logs(self, day: dt.date) -> Dict[str, HabitLog]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT id, habit_id, date, status, completed_at FROM habit_logs WHERE date = ?",
                    (day.isoformat(),),
                ).fetchall()
            return {r["habit_id"]: _row_to_log(r) for r in rows}
        except (sqlite3.Error, ValueError) as e:
            raise StoreReadError(f"Failed to read logs for {day}: {e}") from e

    def get_settings(self) -> Settings:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT value FROM settings WHERE key = ?", (BLOCKED_WEBSITES_KEY,)
                ).fetchone()
            websites = json.loads(row["value"]) if row else []
            return Settings(blocked_websites=frozenset(w for w in websites if w))
        except (sqlite3.Error, ValueError) as e:
            raise StoreReadError(f"Failed to read settings: {e}") from e

    # ---------- writes ----------

    def upsert_missed_log(self, habit_id: str, day: dt.date) -> bool:
        """Record a missed log unless any log already exists. Returns True if inserted."""
        try:
            with closing(self._connect()) as conn:
                with conn:
                    cur = conn.execute(
                        "INSERT INTO habit_logs (id, habit_id, date, status, created_at) "
                        "SELECT ?, ?, ?, ?, ? WHERE NOT EXISTS "
                        "(SELECT 1 FROM habit_logs WHERE habit_id = ? AND date = ?)",
                        (
                            str(uuid.uuid4()), habit_id, day.isoformat(), STATUS_MISSED,
                            dt.datetime.now(dt.timezone.utc).isoformat(),
                            habit_id, day.isoformat(),
                        ),
                    )
                    inserted = cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to record missed log for habit {habit_id}: {e}") from e
        if inserted:
            logging.info(f"Marked habit {habit_id} as missed for {day.isoformat()}")
        return inserted
