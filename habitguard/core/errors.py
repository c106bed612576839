#!/usr/bin/env python3
"""Exception types raised by the habitguard daemon.

Steady-state errors (store, privileged write, protocol) are caught at the
cycle or connection boundary and logged. Only ConfigError is fatal.
"""

from __future__ import annotations

from typing import Iterable, Optional


class HabitGuardError(Exception):
    """Base class for all daemon errors."""


class ConfigError(HabitGuardError):
    """Missing or unusable paths, permissions or settings at startup."""


class StoreReadError(HabitGuardError):
    """The habit store could not be read. Retried on the next wake."""


class StoreWriteError(HabitGuardError):
    """A missed-log upsert could not be written. Retried on the next wake."""


class ProtocolError(HabitGuardError):
    """Malformed or unknown IPC request."""


class PrivilegeWriteError(HabitGuardError):
    """The privileged install of the hosts file failed.

    The hosts file is left as it was; ``domains`` is the set that was being
    applied (empty when the failed write was a removal).
    """

    def __init__(self, message: str, domains: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.domains = frozenset(domains or ())
