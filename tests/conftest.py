"""Shared test fixtures for habitguard.

Hosts files, databases and sockets all live in temporary directories; the
privileged install path is replaced by a direct rename so no test needs root.
"""
from __future__ import annotations

import datetime as dt
import json
import shutil
import sqlite3
import tempfile
import uuid
from contextlib import closing
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from habitguard.file_handlers.habit_store import BLOCKED_WEBSITES_KEY, HabitStore
from habitguard.file_handlers.hosts_file import HostsFileHandler
from habitguard.file_handlers.state_file import StateFile
from habitguard.security.protection import PrivilegedInstaller

SAMPLE_HOSTS = (
    "##\n"
    "# Host Database\n"
    "##\n"
    "127.0.0.1\tlocalhost\n"
    "255.255.255.255\tbroadcasthost\n"
    "::1             localhost\n"
)


class CountingInstaller(PrivilegedInstaller):
    """Direct installer that records every install."""

    def __init__(self):
        super().__init__(None)
        self.installs: List[str] = []

    def install(self, staged_path: str, target: str) -> None:
        self.installs.append(target)
        super().install(staged_path, target)


class FailingInstaller(PrivilegedInstaller):
    """Installer whose privileged command always fails."""

    def __init__(self):
        super().__init__(["sudo", "-n", "/bin/cp"])
        self.attempts = 0

    def staging_dir(self, target: str) -> str:
        return str(Path(target).parent)

    def install(self, staged_path: str, target: str) -> None:
        self.attempts += 1
        raise RuntimeError("sudo: a password is required")


class HabitDb:
    """Writes rows the way the API layer would."""

    def __init__(self, store: HabitStore):
        self.store = store

    def _execute(self, sql: str, params: tuple) -> None:
        with closing(sqlite3.connect(self.store.db_path)) as conn:
            with conn:
                conn.execute(sql, params)

    def add_habit(self, name: str, start: Optional[str] = None, deadline: Optional[str] = None,
                  active_days: Optional[Iterable[int]] = None, is_active: bool = True,
                  habit_id: Optional[str] = None) -> str:
        habit_id = habit_id or str(uuid.uuid4())
        days = json.dumps(list(active_days)) if active_days is not None else None
        self._execute(
            "INSERT INTO habits (id, name, start_time_utc, deadline_utc, active_days, is_active) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (habit_id, name, start, deadline, days, int(is_active)),
        )
        return habit_id

    def log(self, habit_id: str, day: dt.date, status: str) -> None:
        self._execute(
            "INSERT INTO habit_logs (id, habit_id, date, status) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (habit_id, date) DO UPDATE SET status = excluded.status",
            (str(uuid.uuid4()), habit_id, day.isoformat(), status),
        )

    def set_blocked_websites(self, domains: Iterable[str]) -> None:
        self._execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            (BLOCKED_WEBSITES_KEY, json.dumps(list(domains))),
        )


@pytest.fixture()
def hosts_path(tmp_path: Path) -> Path:
    path = tmp_path / "etc" / "hosts"
    path.parent.mkdir()
    path.write_text(SAMPLE_HOSTS)
    return path


@pytest.fixture()
def installer() -> CountingInstaller:
    return CountingInstaller()


@pytest.fixture()
def dns_flushes() -> List[int]:
    return []


@pytest.fixture()
def hosts_handler(hosts_path: Path, tmp_path: Path, installer: CountingInstaller,
                  dns_flushes: List[int]) -> HostsFileHandler:
    return HostsFileHandler(
        hosts_path=str(hosts_path),
        backup_dir=str(tmp_path / "backups"),
        installer=installer,
        dns_flusher=lambda: dns_flushes.append(1),
    )


@pytest.fixture()
def store(tmp_path: Path) -> HabitStore:
    habit_store = HabitStore(str(tmp_path / "habit-tracker.db"))
    habit_store.ensure_schema()
    return habit_store


@pytest.fixture()
def db(store: HabitStore) -> HabitDb:
    return HabitDb(store)


@pytest.fixture()
def state_file(tmp_path: Path) -> StateFile:
    return StateFile(str(tmp_path / "daemon-state.json"))


@pytest.fixture()
def socket_dir():
    # Unix socket paths are length-limited; pytest's tmp_path can be too long
    path = tempfile.mkdtemp(prefix="hg-")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)
