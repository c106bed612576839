#!/usr/bin/env python3
import signal
import logging
import datetime as dt
import threading

from habitguard.core.errors import (
    ConfigError,
    PrivilegeWriteError,
    StoreReadError,
    StoreWriteError,
)
from habitguard.core.models import DaemonStatus
from habitguard.core.scheduler import evaluate, seconds_until_next_transition
from habitguard.core.trigger import PeriodicTimer, RefreshCoalescer
from habitguard.network.socket_server import CommandHandler

# Wake slightly after a schedule boundary so the comparison is already true
BOUNDARY_PAD_SECONDS = 1.0

IDLE = "IDLE"
EVALUATING = "EVALUATING"
APPLYING = "APPLYING"


def utc_now():
    return dt.datetime.now(dt.timezone.utc)


class HabitBlocker(CommandHandler):
    """Runs evaluate -> persist missed logs -> apply, one cycle at a time.

    A single worker thread takes requests from the coalescer, so the hosts
    file is never written concurrently with itself. IPC handlers and the
    periodic timer only enqueue.
    """

    def __init__(self, store, hosts_handler, state_file, check_interval=60.0,
                 shutdown_timeout=10.0, clock=None):
        self.store = store
        self.hosts_handler = hosts_handler
        self.state_file = state_file
        self.shutdown_timeout = shutdown_timeout
        self.clock = clock or utc_now

        self.coalescer = RefreshCoalescer()
        self.timer = PeriodicTimer(self.coalescer, check_interval)
        self.cycle_state = IDLE
        self.cycles_run = 0

        self._status = DaemonStatus()
        self._status_lock = threading.Lock()
        self._worker = None
        self._shutdown_event = threading.Event()

    # ------------------------------------------------------------------
    # IPC commands
    # ------------------------------------------------------------------
    def request_refresh(self):
        logging.info("Received refresh signal via socket")
        self.coalescer.request("ipc")

    def request_reset(self):
        logging.warning("Received reset signal via socket")
        self.coalescer.request("ipc-reset", reset=True)

    def activate_bypass(self, minutes):
        until = self.state_file.activate_bypass(minutes, self.clock())
        with self._status_lock:
            self._status.bypass_until = until
        self.coalescer.request("bypass", reset=True)

    def cancel_bypass(self):
        self.state_file.cancel_bypass()
        with self._status_lock:
            self._status.bypass_until = None
        self.coalescer.request("resume")

    def status_dict(self):
        return self.status().to_dict()

    def status(self):
        """Snapshot of the daemon status for the API/UI layer."""
        with self._status_lock:
            snapshot = DaemonStatus(**vars(self._status))
        applied = self.hosts_handler.applied_domains
        if applied is None:
            try:
                applied = frozenset(self.hosts_handler.blocked_domains())
            except OSError as e:
                logging.warning(f"Could not read hosts file for status: {e}")
                applied = frozenset()
        snapshot.currently_blocked_domains = frozenset(applied)
        return snapshot

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def check_startup(self):
        """Verify the store and hosts file before entering the loop. Raises ConfigError."""
        try:
            self.store.check_reachable()
        except StoreReadError as e:
            raise ConfigError(f"Cannot reach habit store: {e}") from e
        try:
            self.hosts_handler.read_hosts()
            self.hosts_handler.ensure_backup_dir()
        except OSError as e:
            raise ConfigError(f"Hosts file or backup directory unusable: {e}") from e
        self.hosts_handler.prune_backups()

    def run_cycle(self, request):
        """One evaluate-apply cycle. Never raises; errors end up in the status."""
        now = self.clock()
        decision = None
        domains = frozenset()
        error = None
        self.cycle_state = EVALUATING
        try:
            if request.reset:
                self.cycle_state = APPLYING
                changed = self.hosts_handler.reset()
                logging.info(f"[{now.isoformat()}] Reset cycle ({request.reason}): hosts changed={changed}")
                return None

            habits = self.store.get_active_habits()
            logs = self.store.get_today_logs(now.date())
            settings = self.store.get_settings()
            decision = evaluate(now, habits, logs)
            domains = settings.blocked_websites

            for habit_id in decision.missed_intents:
                try:
                    self.store.upsert_missed_log(habit_id, now.date())
                except StoreWriteError as e:
                    logging.error(f"[{now.isoformat()}] {e}")

            bypass_until = self.state_file.bypass_until(now)
            with self._status_lock:
                self._status.bypass_until = bypass_until

            self.cycle_state = APPLYING
            if decision.should_block and not bypass_until:
                changed = self.hosts_handler.apply_blocking(domains)
                action = "block"
            else:
                changed = self.hosts_handler.remove_blocking()
                action = "bypass" if decision.should_block else "unblock"

            logging.info(
                f"[{now.isoformat()}] Cycle ({request.reason}): action={action} "
                f"overdue={list(decision.overdue_habits)} domains={sorted(domains)} "
                f"hosts changed={changed}"
            )
            self.timer.wake_in(self._next_wake(now, habits))
            return decision
        except StoreReadError as e:
            error = f"Store read failed: {e}"
            logging.error(f"[{now.isoformat()}] {error}; retrying on next wake")
        except PrivilegeWriteError as e:
            should_block = decision.should_block if decision else None
            error = f"Hosts write failed: {e}"
            logging.error(
                f"[{now.isoformat()}] {error} (should_block={should_block}, "
                f"domains={sorted(e.domains)}); retrying on next wake"
            )
        except Exception as e:
            error = f"Unexpected error: {e}"
            logging.exception(f"[{now.isoformat()}] Error in daemon cycle (domains={sorted(domains)})")
        finally:
            self.cycle_state = IDLE
            self.cycles_run += 1
            with self._status_lock:
                self._status.last_check = now
                self._status.last_error = error
        return decision

    def _next_wake(self, now, habits):
        delay = seconds_until_next_transition(now, habits)
        return None if delay is None else delay + BOUNDARY_PAD_SECONDS

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _worker_loop(self):
        while True:
            request = self.coalescer.take()
            if request is None:
                break
            self.run_cycle(request)
        logging.info("Daemon worker stopped")

    def start(self):
        with self._status_lock:
            self._status.is_running = True
        self._worker = threading.Thread(target=self._worker_loop, name="habitguard-worker", daemon=True)
        self._worker.start()
        self.timer.start()
        self.coalescer.request("startup")
        logging.info("Habit blocker daemon started")

    def stop(self, timeout=None):
        """Stop waking and wait for the in-flight cycle. Returns False on timeout."""
        timeout = self.shutdown_timeout if timeout is None else timeout
        self.timer.stop()
        self.coalescer.close()
        finished = True
        if self._worker is not None:
            self._worker.join(timeout)
            finished = not self._worker.is_alive()
            if not finished:
                logging.warning(f"In-flight cycle did not finish within {timeout}s; exiting anyway")
        with self._status_lock:
            self._status.is_running = False
        # Blocking state is deliberately left as is; only reset unblocks
        logging.info("Habit blocker daemon stopped")
        return finished

    def _signal_handler(self, signum, frame):
        sig_name = signal.Signals(signum).name
        logging.warning(f"Received signal {sig_name} ({signum}), shutting down")
        self._shutdown_event.set()

    def run(self, socket_server=None):
        """Main daemon loop: serve until SIGTERM/SIGINT."""
        self.check_startup()
        if socket_server is not None:
            socket_server.start()

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.start()
        try:
            self._shutdown_event.wait()
        finally:
            if socket_server is not None:
                socket_server.stop()
            self.stop()

    def shutdown(self):
        self._shutdown_event.set()
