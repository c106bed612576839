"""Integration tests for habitguard.core.blocker: full cycles against real files."""
from __future__ import annotations

import datetime as dt
import threading
import time
from pathlib import Path
from typing import List

import pytest

from habitguard.core.blocker import IDLE, HabitBlocker
from habitguard.core.errors import ConfigError, PrivilegeWriteError
from habitguard.core.models import STATUS_COMPLETED, STATUS_MISSED
from habitguard.core.trigger import CycleRequest
from habitguard.file_handlers.habit_store import HabitStore
from habitguard.file_handlers.hosts_file import HostsFileHandler, parse_marked_block
from habitguard.file_handlers.state_file import StateFile

from conftest import SAMPLE_HOSTS, FailingInstaller, HabitDb

MONDAY = dt.date(2026, 10, 19)
REFRESH = CycleRequest(reason="test")
RESET = CycleRequest(reason="test-reset", reset=True)


class FakeClock:
    def __init__(self, hour: int = 6, minute: int = 0):
        self.now = dt.datetime(2026, 10, 19, hour, minute, tzinfo=dt.timezone.utc)

    def set(self, hour: int, minute: int) -> None:
        self.now = self.now.replace(hour=hour, minute=minute)

    def __call__(self) -> dt.datetime:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def blocker(store: HabitStore, hosts_handler: HostsFileHandler, state_file: StateFile,
            clock: FakeClock) -> HabitBlocker:
    return HabitBlocker(store, hosts_handler, state_file, check_interval=60, clock=clock)


def _blocked(hosts_path: Path) -> set:
    return parse_marked_block(hosts_path.read_text())


# ---------------------------------------------------------------------------
# Cycle behaviour
# ---------------------------------------------------------------------------


class TestMakeBedScenario:
    def test_full_day(self, blocker: HabitBlocker, db: HabitDb, store: HabitStore,
                      clock: FakeClock, hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", deadline="09:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])

        clock.set(6, 59)
        assert blocker.run_cycle(REFRESH).should_block is False
        assert hosts_path.read_text() == SAMPLE_HOSTS

        clock.set(7, 0)
        assert blocker.run_cycle(REFRESH).should_block is True
        assert _blocked(hosts_path) == {"reddit.com"}
        assert "127.0.0.1 www.reddit.com" in hosts_path.read_text()

        clock.set(9, 1)
        decision = blocker.run_cycle(REFRESH)
        assert decision.missed_intents == ("bed",)
        assert store.get_today_log("bed", MONDAY).status == STATUS_MISSED
        assert _blocked(hosts_path) == {"reddit.com"}

        db.log("bed", MONDAY, STATUS_COMPLETED)
        clock.set(9, 30)
        assert blocker.run_cycle(REFRESH).should_block is False
        assert hosts_path.read_text() == SAMPLE_HOSTS
        assert store.get_today_log("bed", MONDAY).status == STATUS_COMPLETED

    def test_blocked_list_change_is_picked_up(self, blocker: HabitBlocker, db: HabitDb,
                                              clock: FakeClock, hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.run_cycle(REFRESH)
        db.set_blocked_websites(["reddit.com", "twitter.com"])
        blocker.run_cycle(REFRESH)
        assert _blocked(hosts_path) == {"reddit.com", "twitter.com"}

    def test_repeated_cycles_write_once(self, blocker: HabitBlocker, db: HabitDb, clock: FakeClock,
                                        installer, dns_flushes: List[int]) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        for _ in range(3):
            blocker.run_cycle(REFRESH)
        assert len(installer.installs) == 1
        assert len(dns_flushes) == 1
        assert blocker.cycles_run == 3
        assert blocker.cycle_state == IDLE

    def test_timer_hint_points_at_next_boundary(self, blocker: HabitBlocker, db: HabitDb,
                                                clock: FakeClock) -> None:
        db.add_habit("Make bed", start="07:00", deadline="09:00", habit_id="bed")
        clock.set(8, 0)
        blocker.run_cycle(REFRESH)
        assert blocker.timer._hint == pytest.approx(3600 + 1.0)


class TestResetAndBypass:
    def test_reset_unblocks_until_next_cycle(self, blocker: HabitBlocker, db: HabitDb,
                                             clock: FakeClock, hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.run_cycle(REFRESH)
        assert blocker.run_cycle(RESET) is None
        assert hosts_path.read_text() == SAMPLE_HOSTS
        # Still overdue, so the next normal cycle blocks again
        blocker.run_cycle(REFRESH)
        assert _blocked(hosts_path) == {"reddit.com"}

    def test_bypass_window(self, blocker: HabitBlocker, db: HabitDb, clock: FakeClock,
                           hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.run_cycle(REFRESH)

        blocker.activate_bypass(30)
        assert blocker.coalescer.take(timeout=0).reset
        blocker.run_cycle(REFRESH)
        assert hosts_path.read_text() == SAMPLE_HOSTS
        assert blocker.status().bypass_until == clock.now + dt.timedelta(minutes=30)

        clock.set(8, 31)
        blocker.run_cycle(REFRESH)
        assert _blocked(hosts_path) == {"reddit.com"}
        assert blocker.status().bypass_until is None

    def test_resume_ends_bypass(self, blocker: HabitBlocker, db: HabitDb, clock: FakeClock,
                                hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.activate_bypass(60)
        blocker.run_cycle(REFRESH)
        assert hosts_path.read_text() == SAMPLE_HOSTS
        blocker.cancel_bypass()
        blocker.run_cycle(REFRESH)
        assert _blocked(hosts_path) == {"reddit.com"}

    def test_bypass_out_of_range(self, blocker: HabitBlocker) -> None:
        with pytest.raises(ValueError):
            blocker.activate_bypass(0)
        with pytest.raises(ValueError):
            blocker.activate_bypass(121)
        assert blocker.coalescer.pending is None


class TestFailures:
    def test_write_failure_is_reported_not_raised(self, store: HabitStore, db: HabitDb,
                                                  state_file: StateFile, clock: FakeClock,
                                                  hosts_path: Path, tmp_path: Path) -> None:
        failing = FailingInstaller()
        handler = HostsFileHandler(str(hosts_path), str(tmp_path / "backups"), installer=failing)
        blocker = HabitBlocker(store, handler, state_file, clock=clock)
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)

        blocker.run_cycle(REFRESH)
        status = blocker.status()
        assert status.last_error is not None and "Hosts write failed" in status.last_error
        assert status.last_check == clock.now
        assert hosts_path.read_text() == SAMPLE_HOSTS

        blocker.run_cycle(REFRESH)
        assert failing.attempts == 2

    def test_store_read_failure_keeps_hosts_untouched(self, hosts_handler: HostsFileHandler,
                                                      state_file: StateFile, clock: FakeClock,
                                                      hosts_path: Path, tmp_path: Path) -> None:
        hosts_handler.apply_blocking({"reddit.com"})
        broken = HabitStore(str(tmp_path / "missing" / "habit-tracker.db"))
        blocker = HabitBlocker(broken, hosts_handler, state_file, clock=clock)
        assert blocker.run_cycle(REFRESH) is None
        assert "Store read failed" in blocker.status().last_error
        assert _blocked(hosts_path) == {"reddit.com"}

    def test_error_clears_after_successful_cycle(self, blocker: HabitBlocker, store: HabitStore,
                                                 monkeypatch: pytest.MonkeyPatch) -> None:
        def boom():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "get_active_habits", boom)
        blocker.run_cycle(REFRESH)
        assert "disk on fire" in blocker.status().last_error
        monkeypatch.undo()
        blocker.run_cycle(REFRESH)
        assert blocker.status().last_error is None

    def test_missed_write_failure_does_not_stop_cycle(self, blocker: HabitBlocker, db: HabitDb,
                                                      store: HabitStore, clock: FakeClock,
                                                      hosts_path: Path,
                                                      monkeypatch: pytest.MonkeyPatch) -> None:
        from habitguard.core.errors import StoreWriteError

        def fail(habit_id, day):
            raise StoreWriteError("database is locked")

        monkeypatch.setattr(store, "upsert_missed_log", fail)
        db.add_habit("Make bed", start="07:00", deadline="09:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(10, 0)
        assert blocker.run_cycle(REFRESH).should_block is True
        assert _blocked(hosts_path) == {"reddit.com"}
        assert blocker.status().last_error is None


class TestStartup:
    def test_unreachable_store_is_config_error(self, hosts_handler: HostsFileHandler,
                                               state_file: StateFile, tmp_path: Path) -> None:
        blocker = HabitBlocker(HabitStore(str(tmp_path / "nope.db")), hosts_handler, state_file)
        with pytest.raises(ConfigError):
            blocker.check_startup()

    def test_missing_hosts_file_is_config_error(self, store: HabitStore, state_file: StateFile,
                                                tmp_path: Path, installer) -> None:
        handler = HostsFileHandler(str(tmp_path / "no-hosts"), str(tmp_path / "backups"),
                                   installer=installer)
        with pytest.raises(ConfigError):
            HabitBlocker(store, handler, state_file).check_startup()

    def test_startup_creates_backup_dir(self, blocker: HabitBlocker, tmp_path: Path) -> None:
        blocker.check_startup()
        assert (tmp_path / "backups").is_dir()


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestLifecycle:
    def test_start_runs_startup_cycle_and_stop_joins(self, blocker: HabitBlocker, db: HabitDb,
                                                     clock: FakeClock, hosts_path: Path) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.start()
        try:
            assert _wait_for(lambda: blocker.cycles_run >= 1)
            assert blocker.status().is_running
            assert _blocked(hosts_path) == {"reddit.com"}
        finally:
            assert blocker.stop(timeout=5) is True
        assert not blocker.status().is_running
        # Stopping leaves the block in place
        assert _blocked(hosts_path) == {"reddit.com"}

    def test_refresh_request_triggers_cycle(self, blocker: HabitBlocker, db: HabitDb,
                                            clock: FakeClock, hosts_path: Path) -> None:
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.start()
        try:
            assert _wait_for(lambda: blocker.cycles_run >= 1)
            db.add_habit("Make bed", start="07:00", habit_id="bed")
            blocker.request_refresh()
            assert _wait_for(lambda: _blocked(hosts_path) == {"reddit.com"})
        finally:
            blocker.stop(timeout=5)

    def test_refreshes_during_cycle_run_one_more(self, blocker: HabitBlocker, store: HabitStore,
                                                 monkeypatch: pytest.MonkeyPatch) -> None:
        entered = threading.Event()
        release = threading.Event()
        read_habits = store.get_active_habits

        def held_read():
            entered.set()
            release.wait(5)
            return read_habits()

        monkeypatch.setattr(store, "get_active_habits", held_read)
        blocker.start()
        try:
            assert entered.wait(5)
            assert blocker.cycles_run == 0
            blocker.request_refresh()
            blocker.request_refresh()
            release.set()
            assert _wait_for(lambda: blocker.cycles_run >= 2)
            time.sleep(0.2)
            assert blocker.cycles_run == 2
            assert blocker.coalescer.pending is None
        finally:
            blocker.stop(timeout=5)

    def test_status_dict_shape(self, blocker: HabitBlocker, db: HabitDb, clock: FakeClock) -> None:
        db.add_habit("Make bed", start="07:00", habit_id="bed")
        db.set_blocked_websites(["reddit.com"])
        clock.set(8, 0)
        blocker.run_cycle(REFRESH)
        status = blocker.status_dict()
        assert status["currentlyBlockedDomains"] == ["reddit.com"]
        assert status["lastCheckTimestamp"] == clock.now.isoformat()
        assert status["lastError"] is None
        assert status["isRunning"] is False
