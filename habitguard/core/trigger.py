#!/usr/bin/env python3
"""
Wake sources for the daemon loop.

IPC handlers and the periodic timer never run a cycle themselves. They drop
a request into a RefreshCoalescer, a single pending slot: whatever arrives
while a cycle runs becomes at most one follow-up cycle.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Optional


@dataclasses.dataclass(frozen=True)
class CycleRequest:
    reason: str
    reset: bool = False


class RefreshCoalescer:
    def __init__(self):
        self._cond = threading.Condition()
        self._pending: Optional[CycleRequest] = None
        self._closed = False

    @property
    def pending(self) -> Optional[CycleRequest]:
        with self._cond:
            return self._pending

    def request(self, reason: str, reset: bool = False) -> None:
        with self._cond:
            if self._closed:
                return
            if self._pending is None or (reset and not self._pending.reset):
                self._pending = CycleRequest(reason=reason, reset=reset)
            self._cond.notify()

    def take(self, timeout: Optional[float] = None) -> Optional[CycleRequest]:
        """Block until a request is pending and claim it. None on timeout or close."""
        with self._cond:
            self._cond.wait_for(lambda: self._pending is not None or self._closed, timeout)
            if self._closed:
                # Cycles not yet started are dropped on shutdown
                self._pending = None
                return None
            request, self._pending = self._pending, None
            return request

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class PeriodicTimer(threading.Thread):
    """Fallback producer: requests a cycle every ``interval`` seconds.

    wake_in() shortens the current wait so a known schedule boundary (a start
    time or deadline) is caught on time rather than up to one interval late.
    """

    def __init__(self, coalescer: RefreshCoalescer, interval: float):
        super().__init__(name="habitguard-timer", daemon=True)
        self.coalescer = coalescer
        self.interval = interval
        self._cond = threading.Condition()
        self._hint: Optional[float] = None
        self._stopped = False

    def wake_in(self, seconds: Optional[float]) -> None:
        if seconds is None:
            return
        with self._cond:
            self._hint = max(0.0, seconds)
            self._cond.notify()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify()

    def run(self) -> None:
        while True:
            with self._cond:
                if self._stopped:
                    return
                delay = self.interval if self._hint is None else min(self.interval, self._hint)
                self._hint = None
                rearmed = self._cond.wait(timeout=delay)
                if self._stopped:
                    return
            if rearmed:
                continue
            logging.debug("Periodic timer fired")
            self.coalescer.request("timer")
