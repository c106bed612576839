#!/usr/bin/env python3
"""
Privileged install of the staged hosts file.

The daemon runs unprivileged. The one operation that needs root is copying a
staged file over the hosts file, so that is the only command it runs through
sudo, non-interactively. A matching sudoers entry looks like:

    youruser ALL=(root) NOPASSWD: /bin/cp /tmp/habitguard-hosts-* /etc/hosts

When the daemon already owns the hosts file (running as root, or a test
fixture), the staged file is renamed into place instead.
"""

from __future__ import annotations

import os
import shlex
import shutil
import logging
import platform
import subprocess
import tempfile
from typing import List, Optional, Sequence

from habitguard.core.errors import ConfigError

DEFAULT_SUDO_COMMAND: List[str] = ["sudo", "-n", "/bin/cp"]
INSTALL_TIMEOUT_SECONDS = 30


def run_cmd(cmd: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess. Raise on failure if check is True."""
    result = subprocess.run(
        list(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=INSTALL_TIMEOUT_SECONDS,
    )
    if check and result.returncode != 0:
        raise RuntimeError(
            f"Command failed ({result.returncode}): {shlex.join(cmd)}\n"
            f"STDOUT:\n{result.stdout}\nSTDERR:\n{result.stderr}"
        )
    return result


def is_root() -> bool:
    try:
        return os.geteuid() == 0
    except AttributeError:
        return False


class PrivilegedInstaller:
    """Install a staged file over a target with a single allow-listed command.

    ``command`` is the argv prefix; the staged path and the target are
    appended. ``None`` means install directly with an atomic rename.
    """

    def __init__(self, command: Optional[Sequence[str]] = None):
        self.command = list(command) if command else None

    @classmethod
    def for_current_user(cls, command: Optional[Sequence[str]] = None) -> "PrivilegedInstaller":
        if command:
            return cls(command)
        if is_root():
            return cls(None)
        return cls(DEFAULT_SUDO_COMMAND)

    @property
    def is_direct(self) -> bool:
        return self.command is None

    def staging_dir(self, target: str) -> str:
        # A rename is only atomic within one filesystem; sudo cp reads from
        # the private temp dir the sudoers entry allows.
        if self.is_direct:
            return os.path.dirname(os.path.abspath(target))
        return tempfile.gettempdir()

    def install(self, staged_path: str, target: str) -> None:
        """Install ``staged_path`` over ``target``. Raises OSError or RuntimeError."""
        if self.is_direct:
            with_mode = os.stat(target).st_mode & 0o777 if os.path.exists(target) else 0o644
            os.chmod(staged_path, with_mode)
            os.replace(staged_path, target)
            return
        run_cmd(self.command + [staged_path, target])

    def check_available(self, target: str) -> None:
        """Startup check that the install path can work at all."""
        if self.is_direct:
            parent = os.path.dirname(os.path.abspath(target))
            if not os.access(parent, os.W_OK):
                raise ConfigError(f"Cannot write to {parent}; configure an install command")
            return
        if platform.system().lower() == "windows":
            raise ConfigError("Privileged install via sudo is not supported on Windows")
        executable = self.command[0]
        if shutil.which(executable) is None:
            raise ConfigError(f"Install command not found: {executable}")
        logging.info(f"Hosts file will be installed with: {shlex.join(self.command)}")
