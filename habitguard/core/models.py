#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import datetime as dt
from typing import Dict, FrozenSet, List, Optional, Tuple

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_MISSED = "missed"
LOG_STATUSES = (STATUS_COMPLETED, STATUS_SKIPPED, STATUS_MISSED)

# Statuses that clear a due habit for the day
RESOLVED_STATUSES = (STATUS_COMPLETED, STATUS_SKIPPED)


def parse_time_of_day(value: Optional[str]) -> Optional[dt.time]:
    """Parse an ``HH:MM`` (or ``HH:MM:SS``) UTC time-of-day; blank means unset."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return dt.time.fromisoformat(text)


def weekday_index(day: dt.date) -> int:
    """Weekday index as stored by the API layer: 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


@dataclasses.dataclass(frozen=True)
class Habit:
    id: str
    name: str
    start_time_utc: Optional[dt.time] = None
    deadline_utc: Optional[dt.time] = None
    active_days: FrozenSet[int] = frozenset()
    is_active: bool = True

    def is_scheduled_on(self, day: dt.date) -> bool:
        return not self.active_days or weekday_index(day) in self.active_days


@dataclasses.dataclass(frozen=True)
class HabitLog:
    id: str
    habit_id: str
    date: dt.date
    status: str
    completed_at: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_STATUSES


@dataclasses.dataclass(frozen=True)
class Settings:
    blocked_websites: FrozenSet[str] = frozenset()


@dataclasses.dataclass(frozen=True)
class Decision:
    """Result of one evaluation: whether to block, and which habits to mark missed."""
    should_block: bool
    missed_intents: Tuple[str, ...] = ()
    overdue_habits: Tuple[str, ...] = ()


@dataclasses.dataclass
class DaemonStatus:
    is_running: bool = False
    last_check: Optional[dt.datetime] = None
    currently_blocked_domains: FrozenSet[str] = frozenset()
    last_error: Optional[str] = None
    bypass_until: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, object]:
        blocked: List[str] = sorted(self.currently_blocked_domains)
        return {
            "isRunning": self.is_running,
            "lastCheckTimestamp": self.last_check.isoformat() if self.last_check else None,
            "currentlyBlockedDomains": blocked,
            "lastError": self.last_error,
            "bypassUntil": self.bypass_until.isoformat() if self.bypass_until else None,
        }
