#!/usr/bin/env python3
"""
Blocking decision for a point in time.

Everything here is pure: the daemon loop reads the store, calls evaluate()
and acts on the result. Times are UTC time-of-day values; conversion from
the user's timezone happened when the habit was written.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, List, Mapping, Optional

from habitguard.core.models import Decision, Habit, HabitLog


def is_due(habit: Habit, now: dt.datetime) -> bool:
    """A habit is due once its start time has passed on a scheduled day."""
    if not habit.is_active or habit.start_time_utc is None:
        return False
    if not habit.is_scheduled_on(now.date()):
        return False
    return now.time() >= habit.start_time_utc


def is_overdue_unresolved(habit: Habit, now: dt.datetime, log: Optional[HabitLog]) -> bool:
    if not is_due(habit, now):
        return False
    return log is None or not log.is_resolved


def is_past_deadline(habit: Habit, now: dt.datetime) -> bool:
    if not habit.is_active or habit.deadline_utc is None:
        return False
    if not habit.is_scheduled_on(now.date()):
        return False
    return now.time() >= habit.deadline_utc


def evaluate(now: dt.datetime, habits: Iterable[Habit],
             today_logs: Mapping[str, HabitLog]) -> Decision:
    """Decide whether blocking should be active at ``now``.

    Any overdue-unresolved habit sets the block; it only clears once every due
    habit has a completed or skipped log for today. Habits past their deadline
    with no log at all yield a missed intent, re-emitted until a log exists.
    """
    overdue: List[str] = []
    missed: List[str] = []
    for habit in habits:
        log = today_logs.get(habit.id)
        if is_overdue_unresolved(habit, now, log):
            overdue.append(habit.id)
        if log is None and is_past_deadline(habit, now):
            missed.append(habit.id)
    return Decision(
        should_block=bool(overdue),
        missed_intents=tuple(missed),
        overdue_habits=tuple(overdue),
    )


def seconds_until_next_transition(now: dt.datetime, habits: Iterable[Habit]) -> Optional[float]:
    """Seconds until the soonest start or deadline boundary later today.

    Returns None when no scheduled habit has a boundary left today; the
    periodic timer covers the date rollover.
    """
    today = now.date()
    soonest: Optional[float] = None
    for habit in habits:
        if not habit.is_active or not habit.is_scheduled_on(today):
            continue
        for boundary in (habit.start_time_utc, habit.deadline_utc):
            if boundary is None or boundary <= now.time():
                continue
            at = dt.datetime.combine(today, boundary, tzinfo=now.tzinfo)
            delta = (at - now).total_seconds()
            if soonest is None or delta < soonest:
                soonest = delta
    return soonest
