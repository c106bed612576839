#!/usr/bin/env python3
"""
Managed section of the hosts file.

The daemon owns exactly one sentinel-bounded section. Everything outside it
is preserved byte for byte: the file is read and written without newline
translation and undecodable bytes round-trip through surrogateescape.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
import os
import re
import subprocess
import tempfile
import time
from typing import Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

from habitguard.core.errors import PrivilegeWriteError
from habitguard.security.protection import PrivilegedInstaller

HOSTS_START_MARK: str = "# HABITGUARD-START"
HOSTS_END_MARK: str = "# HABITGUARD-END"
BLOCK_ADDRESS: str = "127.0.0.1"

BACKUP_PREFIX: str = "hosts_"
BACKUP_SUFFIX: str = ".bak"
DEFAULT_RETENTION_DAYS: int = 30

_BLOCK_PATTERN = re.compile(
    rf"^{re.escape(HOSTS_START_MARK)}[ \t]*\r?\n"
    # Inner lines never repeat START, so an unterminated START above the block stays outside it
    rf"(?:(?!{re.escape(HOSTS_START_MARK)}).*\n)*?"
    rf"{re.escape(HOSTS_END_MARK)}[ \t]*(?:\r?\n|\Z)",
    re.MULTILINE,
)
_ENTRY_PATTERN = re.compile(rf"^{re.escape(BLOCK_ADDRESS)}\s+(\S+)\s*$")


def normalize_domain(domain: str) -> str:
    d = domain.strip().lower()
    if d.endswith("."):
        d = d[:-1]
    return d


def expand_www_variants(domains: Iterable[str]) -> List[str]:
    """Each domain plus its www. variant, deduplicated and sorted by domain."""
    entries: List[str] = []
    for d in sorted({normalize_domain(d) for d in domains if d and d.strip()}):
        entries.append(d)
        if not d.startswith("www."):
            entries.append(f"www.{d}")
    return entries


def make_hosts_block(domains: Iterable[str]) -> str:
    lines = [HOSTS_START_MARK]
    for entry in expand_www_variants(domains):
        lines.append(f"{BLOCK_ADDRESS} {entry}")
    lines.append(HOSTS_END_MARK)
    return "\n".join(lines) + "\n"


def find_marked_block(text: str) -> Optional[re.Match]:
    return _BLOCK_PATTERN.search(text)


def remove_marked_block(text: str) -> Tuple[str, bool]:
    """Remove the managed block including its sentinel lines.

    A block left at the very end without a trailing newline was appended to a
    file that had none; the newline added in front of it goes too.
    """
    match = find_marked_block(text)
    if match is None:
        return text, False
    start, end = match.start(), match.end()
    if end == len(text) and not text.endswith("\n") and start > 0:
        for sep in ("\r\n", "\n"):
            if text[:start].endswith(sep):
                start -= len(sep)
                break
    return text[:start] + text[end:], True


def replace_marked_block(text: str, block: str) -> str:
    """Swap the managed block in place, or append it when there is none."""
    match = find_marked_block(text)
    if match is not None:
        if match.end() == len(text) and not text.endswith("\n"):
            block = block.rstrip("\n")
        return text[:match.start()] + block + text[match.end():]
    if text and not text.endswith("\n"):
        # Keep the file's missing final newline so removal restores it exactly
        return text + "\n" + block.rstrip("\n")
    return text + block


def parse_marked_block(text: str) -> Set[str]:
    """Base domains listed in the managed block (www. variants folded back)."""
    match = find_marked_block(text)
    if match is None:
        return set()
    entries: Set[str] = set()
    for line in match.group(0).splitlines():
        found = _ENTRY_PATTERN.match(line.strip())
        if found:
            entries.add(found.group(1))
    return {e for e in entries if not (e.startswith("www.") and e[4:] in entries)}


class HostsFileHandler:
    def __init__(self, hosts_path: str = "/etc/hosts", backup_dir: str = "~/.habitguard/backups",
                 installer: Optional[PrivilegedInstaller] = None,
                 dns_flusher: Optional[Callable[[], object]] = None,
                 retention_days: int = DEFAULT_RETENTION_DAYS):
        self.hosts_path = os.path.expanduser(str(hosts_path))
        self.backup_dir = os.path.expanduser(str(backup_dir))
        self.installer = installer or PrivilegedInstaller.for_current_user()
        self.dns_flusher = dns_flusher
        self.retention_days = retention_days
        # Last domain set known to be on disk; None until the first converge
        self.applied_domains: Optional[FrozenSet[str]] = None

    def ensure_backup_dir(self) -> None:
        os.makedirs(self.backup_dir, exist_ok=True)

    def read_hosts(self) -> str:
        with open(self.hosts_path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
            return f.read()

    def blocked_domains(self) -> Set[str]:
        return parse_marked_block(self.read_hosts())

    # ---------- public operations ----------

    def apply_blocking(self, domains: Iterable[str]) -> bool:
        """Converge the managed block to ``domains``. Returns True if the file was written."""
        wanted = frozenset(normalize_domain(d) for d in domains if d and d.strip())
        if not wanted:
            return self.remove_blocking()
        current = self.read_hosts()
        updated = replace_marked_block(current, make_hosts_block(wanted))
        return self._converge(current, updated, wanted)

    def remove_blocking(self) -> bool:
        """Drop the managed block. No backup and no write when it is absent."""
        current = self.read_hosts()
        updated, _ = remove_marked_block(current)
        return self._converge(current, updated, frozenset())

    def reset(self) -> bool:
        logging.warning("Emergency reset requested: removing managed hosts block")
        return self.remove_blocking()

    # ---------- backups ----------

    def backup_hosts(self, content: str) -> str:
        """Write a timestamped copy of the full hosts file and return its path."""
        self.ensure_backup_dir()
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S_%fZ")
        path = os.path.join(self.backup_dir, f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}")
        with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(content)
        logging.info(f"Hosts file backup created: {path}")
        return path

    def list_backups(self) -> List[str]:
        try:
            names = os.listdir(self.backup_dir)
        except FileNotFoundError:
            return []
        return sorted(
            os.path.join(self.backup_dir, n) for n in names
            if n.startswith(BACKUP_PREFIX) and n.endswith(BACKUP_SUFFIX)
        )

    def latest_backup(self) -> Optional[str]:
        backups = self.list_backups()
        return backups[-1] if backups else None

    def prune_backups(self, now: Optional[float] = None) -> int:
        """Delete backups older than the retention window. Returns how many were removed."""
        cutoff = (now if now is not None else time.time()) - self.retention_days * 86400
        removed = 0
        for path in self.list_backups():
            try:
                if os.stat(path).st_mtime < cutoff:
                    os.remove(path)
                    removed += 1
                    logging.info(f"Deleted old backup: {os.path.basename(path)}")
            except OSError as e:
                logging.warning(f"Could not prune backup {path}: {e}")
        return removed

    def _backup_once(self, content: str) -> str:
        """Back up ``content`` unless the newest backup already holds it (a retried write)."""
        latest = self.latest_backup()
        if latest is not None:
            with open(latest, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
                if f.read() == content:
                    logging.debug(f"Reusing hosts backup {latest}")
                    return latest
        return self.backup_hosts(content)

    def restore_backup(self, backup_path: str) -> None:
        """Reinstall a backup verbatim through the privileged install path."""
        with open(backup_path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
            content = f.read()
        self._install(content, parse_marked_block(content))
        self.applied_domains = frozenset(parse_marked_block(content))
        logging.info(f"Hosts file restored from backup: {backup_path}")
        self._flush_dns()

    # ---------- internals ----------

    def _converge(self, current: str, updated: str, domains: FrozenSet[str]) -> bool:
        if updated == current:
            self.applied_domains = domains
            return False

        try:
            backup_path = self._backup_once(current)
        except OSError as e:
            raise PrivilegeWriteError(f"Hosts backup failed, write not attempted: {e}", domains) from e

        self._install(updated, domains)
        self.applied_domains = domains
        if domains:
            logging.info(f"Hosts file updated. Blocking {len(domains)} domains: {', '.join(sorted(domains))} (backup {backup_path})")
        else:
            logging.info(f"Removed managed block from hosts file (backup {backup_path})")

        self._flush_dns()
        self.prune_backups()
        return True

    def _install(self, content: str, domains: Iterable[str]) -> None:
        staging_dir = self.installer.staging_dir(self.hosts_path)
        fd, staged = tempfile.mkstemp(prefix="habitguard-hosts-", dir=staging_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(content)
            self.installer.install(staged, self.hosts_path)
        except (OSError, RuntimeError, subprocess.SubprocessError) as e:
            logging.error(f"Privileged hosts write failed for domains {sorted(domains)}: {e}")
            raise PrivilegeWriteError(f"Failed to install hosts file: {e}", domains) from e
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(staged)

    def _flush_dns(self) -> None:
        if self.dns_flusher is None:
            return
        try:
            self.dns_flusher()
        except Exception as e:
            logging.error(f"Failed to flush DNS cache: {e}")
