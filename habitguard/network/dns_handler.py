#!/usr/bin/env python3
import sys
import shutil
import logging
import subprocess


class DNSHandler:
    """Flush the resolver cache so hosts file changes apply without restarts."""

    def __init__(self, platform_name=None):
        self.platform_name = platform_name or sys.platform

    def _commands(self):
        if self.platform_name == "darwin":
            return [
                ["/usr/bin/dscacheutil", "-flushcache"],
                ["sudo", "-n", "/usr/bin/killall", "-HUP", "mDNSResponder"],
            ]
        if self.platform_name.startswith("linux"):
            if shutil.which("resolvectl"):
                return [["resolvectl", "flush-caches"]]
            if shutil.which("systemd-resolve"):
                return [["systemd-resolve", "--flush-caches"]]
            if shutil.which("nscd"):
                return [["nscd", "-i", "hosts"]]
            return []
        if self.platform_name == "win32":
            return [["ipconfig", "/flushdns"]]
        return []

    def flush_dns_cache(self):
        """Best-effort flush; returns False if any command could not run."""
        commands = self._commands()
        if not commands:
            logging.info(f"No DNS cache to flush on {self.platform_name}")
            return True
        ok = True
        for cmd in commands:
            try:
                result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                        text=True, timeout=10, check=False)
                if result.returncode != 0:
                    logging.warning(f"DNS flush command {cmd[0]} exited {result.returncode}: {result.stderr.strip()}")
                    ok = False
            except (OSError, subprocess.TimeoutExpired) as e:
                logging.warning(f"Failed to run DNS flush command {cmd[0]}: {e}")
                ok = False
        if ok:
            logging.info("DNS cache flushed")
        return ok
