#!/usr/bin/env python3
"""
Persistent daemon state: only the emergency bypass window.

Blocking itself is never stored here; it is recomputed every cycle.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
from typing import Optional

MIN_BYPASS_MINUTES = 1
MAX_BYPASS_MINUTES = 120


class StateFile:
    def __init__(self, path: str):
        self.path = os.path.expanduser(str(path))

    def read_state(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logging.error(f"Error loading daemon state from {self.path}: {e}")
            return {}
        return state if isinstance(state, dict) else {}

    def write_state(self, state: dict) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    # ---------- bypass ----------

    def bypass_until(self, now: dt.datetime) -> Optional[dt.datetime]:
        """End of the active bypass window, or None if there is none or it expired."""
        raw = self.read_state().get("bypass_until")
        if not isinstance(raw, str):
            return None
        try:
            until = dt.datetime.fromisoformat(raw)
        except ValueError:
            return None
        if until.tzinfo is None:
            until = until.replace(tzinfo=dt.timezone.utc)
        return until if until > now else None

    def activate_bypass(self, minutes: int, now: dt.datetime) -> dt.datetime:
        if not MIN_BYPASS_MINUTES <= minutes <= MAX_BYPASS_MINUTES:
            raise ValueError(f"Bypass must be {MIN_BYPASS_MINUTES}-{MAX_BYPASS_MINUTES} minutes, got {minutes}")
        until = now + dt.timedelta(minutes=minutes)
        state = self.read_state()
        state["bypass_until"] = until.isoformat()
        self.write_state(state)
        logging.info(f"Bypass activated for {minutes} minutes until {until.isoformat()}")
        return until

    def cancel_bypass(self) -> None:
        state = self.read_state()
        state["bypass_until"] = None
        self.write_state(state)
        logging.info("Bypass cancelled")
