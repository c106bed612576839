#!/usr/bin/env python3
"""
Daemon configuration.

Defaults, overridden by HABITGUARD_* environment variables, overridden by
command line flags (see habitguard.utils.daemon).
"""

from __future__ import annotations

import dataclasses
import os
import shlex
from typing import List, Mapping, Optional

from habitguard.core.errors import ConfigError

DEFAULT_HOME = "~/.habitguard"
DEFAULT_HOSTS_FILE = "/etc/hosts"
DEFAULT_CHECK_INTERVAL = 60.0
DEFAULT_RETENTION_DAYS = 30
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def expand_home(path: str) -> str:
    return os.path.abspath(os.path.expanduser(str(path)))


@dataclasses.dataclass
class DaemonConfig:
    home: str = DEFAULT_HOME
    db_path: Optional[str] = None
    hosts_path: str = DEFAULT_HOSTS_FILE
    check_interval: float = DEFAULT_CHECK_INTERVAL
    backup_retention_days: int = DEFAULT_RETENTION_DAYS
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    # argv prefix for the privileged copy; None picks sudo or direct install
    install_command: Optional[List[str]] = None
    log_level: str = "INFO"

    def __post_init__(self):
        self.home = expand_home(self.home)
        self.db_path = expand_home(self.db_path) if self.db_path else os.path.join(self.home, "habit-tracker.db")
        self.hosts_path = expand_home(self.hosts_path)

    @property
    def backup_dir(self) -> str:
        return os.path.join(self.home, "backups")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.home, "logs")

    @property
    def log_file(self) -> str:
        return os.path.join(self.log_dir, "daemon.log")

    @property
    def socket_path(self) -> str:
        return os.path.join(self.home, "daemon.sock")

    @property
    def state_file(self) -> str:
        return os.path.join(self.home, "daemon-state.json")

    @property
    def pid_file(self) -> str:
        return os.path.join(self.home, "daemon.pid")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "DaemonConfig":
        env = os.environ if env is None else env
        values = {}
        if env.get("HABITGUARD_HOME"):
            values["home"] = env["HABITGUARD_HOME"]
        if env.get("HABITGUARD_DB_PATH"):
            values["db_path"] = env["HABITGUARD_DB_PATH"]
        if env.get("HABITGUARD_HOSTS_FILE"):
            values["hosts_path"] = env["HABITGUARD_HOSTS_FILE"]
        if env.get("HABITGUARD_LOG_LEVEL"):
            values["log_level"] = env["HABITGUARD_LOG_LEVEL"]
        if env.get("HABITGUARD_INSTALL_COMMAND"):
            values["install_command"] = shlex.split(env["HABITGUARD_INSTALL_COMMAND"])
        try:
            if env.get("HABITGUARD_CHECK_INTERVAL"):
                values["check_interval"] = float(env["HABITGUARD_CHECK_INTERVAL"])
            if env.get("HABITGUARD_BACKUP_RETENTION_DAYS"):
                values["backup_retention_days"] = int(env["HABITGUARD_BACKUP_RETENTION_DAYS"])
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting in environment: {e}") from e
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def validate(self) -> None:
        if self.check_interval <= 0:
            raise ConfigError(f"check_interval must be > 0, got {self.check_interval}")
        if self.backup_retention_days <= 0:
            raise ConfigError(f"backup_retention_days must be > 0, got {self.backup_retention_days}")
        if self.shutdown_timeout <= 0:
            raise ConfigError(f"shutdown_timeout must be > 0, got {self.shutdown_timeout}")
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level: {self.log_level}")
        if not os.path.isfile(self.hosts_path):
            raise ConfigError(f"Hosts file not found: {self.hosts_path}")
        if not os.access(self.hosts_path, os.R_OK):
            raise ConfigError(f"Hosts file not readable: {self.hosts_path}")
        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create data directories under {self.home}: {e}") from e
