#!/usr/bin/env python3
import os
import sys
import json
import shlex
import signal
import argparse
import logging
from daemon import DaemonContext
from lockfile.pidlockfile import PIDLockFile

from habitguard.config import DaemonConfig
from habitguard.core.blocker import HabitBlocker
from habitguard.core.errors import ConfigError, PrivilegeWriteError
from habitguard.file_handlers.habit_store import HabitStore
from habitguard.file_handlers.hosts_file import HostsFileHandler
from habitguard.file_handlers.state_file import StateFile
from habitguard.network.dns_handler import DNSHandler
from habitguard.network.socket_server import SocketServer, notify_daemon, ping_daemon, send_command
from habitguard.security.protection import PrivilegedInstaller

CLIENT_COMMANDS = ("ping", "refresh", "reset", "status", "bypass", "resume")


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Block distracting websites while scheduled habits are overdue')
    parser.add_argument('--home', help='Data directory (default ~/.habitguard)')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run the blocking daemon')
    run.add_argument('--daemon', action='store_true', help='Run as a daemon in the background')
    run.add_argument('--db', dest='db_path', help='Path to the habit tracker SQLite database')
    run.add_argument('--hosts', dest='hosts_path', help='Hosts file to manage (default /etc/hosts)')
    run.add_argument('--interval', dest='check_interval', type=float, help='Seconds between periodic checks')
    run.add_argument('--install-command', help='Command used to install the staged hosts file, e.g. "sudo -n /bin/cp"')
    run.add_argument('--log-level', help='Logging level (default INFO)')

    sub.add_parser('ping', help='Check that the daemon is alive')
    sub.add_parser('refresh', help='Ask the daemon to re-check habits now')
    sub.add_parser('reset', help='Emergency unblock: remove the managed hosts block')
    sub.add_parser('status', help='Show daemon status')
    bypass = sub.add_parser('bypass', help='Unblock for a number of minutes (1-120)')
    bypass.add_argument('minutes', type=int)
    sub.add_parser('resume', help='End an active bypass window')
    restore = sub.add_parser('restore', help='Reinstall a hosts file backup (the newest by default)')
    restore.add_argument('path', nargs='?', help='Backup file to restore')
    restore.add_argument('--hosts', dest='hosts_path', help='Hosts file to restore (default /etc/hosts)')
    restore.add_argument('--install-command', help='Command used to install the restored hosts file')
    return parser.parse_args(argv)


def build_config(args):
    install_command = getattr(args, 'install_command', None)
    return DaemonConfig.from_env(
        home=args.home,
        db_path=getattr(args, 'db_path', None),
        hosts_path=getattr(args, 'hosts_path', None),
        check_interval=getattr(args, 'check_interval', None),
        install_command=shlex.split(install_command) if install_command else None,
        log_level=getattr(args, 'log_level', None),
    )


def configure_logging(config, to_stream=True):
    """Log to the daemon log file and, in the foreground, to stderr"""
    handlers = [logging.FileHandler(config.log_file)]
    if to_stream:
        handlers.append(logging.StreamHandler())
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_hosts_handler(config):
    installer = PrivilegedInstaller.for_current_user(config.install_command)
    installer.check_available(config.hosts_path)
    return HostsFileHandler(
        hosts_path=config.hosts_path,
        backup_dir=config.backup_dir,
        installer=installer,
        dns_flusher=DNSHandler().flush_dns_cache,
        retention_days=config.backup_retention_days,
    )


def build_blocker(config):
    """Wire the daemon components from configuration"""
    hosts_handler = build_hosts_handler(config)
    blocker = HabitBlocker(
        store=HabitStore(config.db_path),
        hosts_handler=hosts_handler,
        state_file=StateFile(config.state_file),
        check_interval=config.check_interval,
        shutdown_timeout=config.shutdown_timeout,
    )
    return blocker, SocketServer(config.socket_path, blocker)


def run_foreground(config, to_stream=True):
    """Run the habit blocker in the foreground; returns the exit code"""
    configure_logging(config, to_stream=to_stream)
    try:
        blocker, socket_server = build_blocker(config)
        blocker.run(socket_server)
    except ConfigError as e:
        logging.critical(f"Fatal startup error: {e}")
        return 1
    return 0


def run_daemon(config):
    """Run the habit blocker as a daemon"""
    with DaemonContext(
        pidfile=PIDLockFile(config.pid_file),
        detach_process=True,
        working_directory=config.home,
        umask=0o022,
        signal_map={signal.SIGTERM: None, signal.SIGINT: None},
    ):
        # Logging is configured inside the context; DaemonContext closes inherited files
        return run_foreground(config, to_stream=False)


def run_client(config, args):
    """Send one IPC command to a running daemon"""
    if args.command == 'ping':
        if not ping_daemon(config.socket_path):
            print(f"Daemon is not running (no answer on {config.socket_path})", file=sys.stderr)
            return 2
        print('pong')
        return 0
    command = args.command
    if command == 'bypass':
        command = f"bypass {args.minutes}"
    reply = send_command(config.socket_path, command)
    if reply is None:
        print(f"Daemon is not running (no answer on {config.socket_path})", file=sys.stderr)
        return 2
    if args.command == 'status' and not reply.startswith('error'):
        print(json.dumps(json.loads(reply), indent=2, sort_keys=True))
    else:
        print(reply)
    return 1 if reply.startswith('error') else 0


def run_restore(config, args):
    """Reinstall a backup, then ask a running daemon to re-apply its block"""
    hosts_handler = build_hosts_handler(config)
    backup = args.path or hosts_handler.latest_backup()
    if backup is None:
        print(f"No backups found in {config.backup_dir}", file=sys.stderr)
        return 1
    hosts_handler.restore_backup(backup)
    print(f"Restored {config.hosts_path} from {backup}")
    if not notify_daemon(config.socket_path):
        print("Daemon is not running; the block will be re-applied on its next start")
    return 0


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    try:
        config = build_config(args)
        if args.command == 'run':
            config.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command in CLIENT_COMMANDS:
        sys.exit(run_client(config, args))
    if args.command == 'restore':
        try:
            sys.exit(run_restore(config, args))
        except (ConfigError, PrivilegeWriteError, OSError) as e:
            print(f"Restore failed: {e}", file=sys.stderr)
            sys.exit(1)

    os.makedirs(config.home, exist_ok=True)
    if args.daemon:
        sys.exit(run_daemon(config))
    sys.exit(run_foreground(config))


if __name__ == "__main__":
    main()
