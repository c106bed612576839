#!/usr/bin/env python3
"""
Local IPC for the daemon: one text request per connection over a Unix socket.

    ping            -> pong       (liveness, no cycle)
    refresh         -> ok         (queue a cycle)
    reset           -> ok         (queue a forced unblock)
    status          -> {json}     (current DaemonStatus)
    bypass <min>    -> ok         (open a bypass window and unblock)
    resume          -> ok         (close the bypass window and refresh)
    anything else   -> error: ...
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import socketserver
import threading
from typing import Optional

from habitguard.core.errors import ConfigError, ProtocolError

MAX_REQUEST_SIZE = 1024
CONNECTION_TIMEOUT = 2.0
CLIENT_TIMEOUT = 1.0


class CommandHandler:
    """What the IPC server may ask of the daemon. Implemented by HabitBlocker."""

    def request_refresh(self) -> None:
        raise NotImplementedError

    def request_reset(self) -> None:
        raise NotImplementedError

    def status_dict(self) -> dict:
        raise NotImplementedError

    def activate_bypass(self, minutes: int) -> None:
        raise NotImplementedError

    def cancel_bypass(self) -> None:
        raise NotImplementedError


def parse_request(line: str) -> tuple:
    """Split a request line into (command, argument). Raises ProtocolError."""
    parts = line.strip().split()
    if not parts:
        raise ProtocolError("empty request")
    command, args = parts[0].lower(), parts[1:]
    if command in ("ping", "refresh", "reset", "status", "resume"):
        if args:
            raise ProtocolError(f"{command} takes no arguments")
        return command, None
    if command == "bypass":
        if len(args) != 1 or not args[0].isdigit():
            raise ProtocolError("usage: bypass <minutes>")
        return command, int(args[0])
    raise ProtocolError("unknown command")


def dispatch(handler: CommandHandler, line: str) -> str:
    """Run one request against the daemon and return the reply line."""
    command, arg = parse_request(line)
    if command == "ping":
        return "pong"
    if command == "refresh":
        handler.request_refresh()
        return "ok"
    if command == "reset":
        handler.request_reset()
        return "ok"
    if command == "status":
        return json.dumps(handler.status_dict(), sort_keys=True)
    if command == "bypass":
        try:
            handler.activate_bypass(arg)
        except ValueError as e:
            raise ProtocolError(str(e)) from e
        return "ok"
    handler.cancel_bypass()
    return "ok"


class DaemonRequestHandler(socketserver.StreamRequestHandler):
    """Handle a single client request."""

    timeout = CONNECTION_TIMEOUT

    def handle(self) -> None:
        try:
            raw = self.rfile.readline(MAX_REQUEST_SIZE + 1)
        except (socket.timeout, OSError) as e:
            logging.warning(f"Socket client read failed: {e}")
            return
        if not raw:
            return
        try:
            if len(raw) > MAX_REQUEST_SIZE:
                raise ProtocolError("request too long")
            line = raw.decode("utf-8", errors="replace")
            reply = dispatch(self.server.command_handler, line)
        except ProtocolError as e:
            logging.warning(f"Rejected socket request {raw[:64]!r}: {e}")
            reply = f"error: {e}"
        except Exception as e:
            logging.error(f"Error handling socket request {raw[:64]!r}: {e}")
            reply = f"error: {e}"
        with contextlib.suppress(OSError):
            self.wfile.write(reply.encode("utf-8") + b"\n")
            self.wfile.flush()


class ThreadingUnixServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: str, command_handler: CommandHandler):
        self.command_handler = command_handler
        super().__init__(socket_path, DaemonRequestHandler)


class SocketServer:
    """Owns the listening socket and the thread serving it."""

    def __init__(self, socket_path: str, command_handler: CommandHandler):
        self.socket_path = os.path.expanduser(str(socket_path))
        self.command_handler = command_handler
        self._server: Optional[ThreadingUnixServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.socket_path) or ".", exist_ok=True)
            # Clean up a stale socket left by a previous run
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.socket_path)
            self._server = ThreadingUnixServer(self.socket_path, self.command_handler)
            os.chmod(self.socket_path, 0o660)
        except OSError as e:
            raise ConfigError(f"Cannot bind IPC socket {self.socket_path}: {e}") from e
        self._thread = threading.Thread(target=self._server.serve_forever,
                                        name="habitguard-ipc", daemon=True)
        self._thread.start()
        logging.info(f"Socket server listening on {self.socket_path}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.socket_path)
        logging.info("Socket server stopped")


def send_command(socket_path: str, command: str, timeout: float = CLIENT_TIMEOUT) -> Optional[str]:
    """Send one request to a running daemon. None if it is unreachable."""
    path = os.path.expanduser(str(socket_path))
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout)
            s.connect(path)
            s.sendall(command.encode("utf-8") + b"\n")
            chunks = []
            while True:
                data = s.recv(4096)
                if not data:
                    break
                chunks.append(data)
                if data.endswith(b"\n"):
                    break
    except OSError:
        return None
    return b"".join(chunks).decode("utf-8").strip()


def ping_daemon(socket_path: str, timeout: float = CLIENT_TIMEOUT) -> bool:
    return send_command(socket_path, "ping", timeout) == "pong"


def notify_daemon(socket_path: str, timeout: float = CLIENT_TIMEOUT) -> bool:
    return send_command(socket_path, "refresh", timeout) == "ok"
