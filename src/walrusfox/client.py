"""Short-lived broker client used by the command line.

Sends a single theme command to the broker (which relays it to every
connected browser bridge) and provides the health/diagnose reports.
"""

from __future__ import annotations

import logging
import socket
import sys
from collections import deque
from typing import TextIO

from walrusfox import __version__
from walrusfox.config import Config
from walrusfox.protocol import SocketCommand, encode_command
from walrusfox.startup import CONNECT_TIMEOUT, is_socket_live
from walrusfox.themes import ColorStore, ColorStoreError

logger = logging.getLogger(__name__)

START_HINT = "Hint: run `walrusfox start` to launch the server."
LOG_TAIL_LINES = 10


class ClientError(Exception):
    """Raised when the broker cannot be reached."""


class Client:
    """Sends commands to the broker and reports on the local setup."""

    def __init__(self, config: Config, out: TextIO | None = None) -> None:
        self._config = config
        self._out = out if out is not None else sys.stdout

    def update(self) -> None:
        self.send_command(SocketCommand.UPDATE)

    def dark(self) -> None:
        self.send_command(SocketCommand.DARK)

    def light(self) -> None:
        self.send_command(SocketCommand.LIGHT)

    def auto(self) -> None:
        self.send_command(SocketCommand.AUTO)

    def send_command(self, command: SocketCommand) -> None:
        """Connect, write one command line and disconnect.

        Raises:
            ClientError: If the broker socket cannot be reached
        """
        path = self._config.socket_path
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(CONNECT_TIMEOUT)
            try:
                s.connect(str(path))
                s.sendall(encode_command(command.value))
            except OSError as e:
                raise ClientError(
                    f"Cannot connect to server at {path}: {e}\n{START_HINT}"
                ) from e
        logger.info("Sent %s to broker at %s", command.value, path)

    def health(self) -> None:
        """Check the broker is reachable.

        Raises:
            ClientError: If it is not
        """
        path = self._config.socket_path
        if not is_socket_live(path):
            raise ClientError(f"Cannot connect to server at {path}\n{START_HINT}")
        self._print(f"Server is reachable at {path}")

    def diagnose(self) -> None:
        """Print version, socket, log and palette status."""
        self._print("walrusfox diagnostics")
        self._print(f"Version: {__version__}")

        path = self._config.socket_path
        self._print(f"Socket path: {path}")
        if path.exists():
            self._print("Socket exists: yes")
            try:
                mode = path.stat().st_mode & 0o7777
                self._print(f"Socket permissions: {mode:o}")
            except OSError as e:
                self._print(f"Socket metadata error: {e}")
        else:
            self._print("Socket exists: no")

        if is_socket_live(path):
            self._print("Connectivity: OK (can connect)")
        else:
            self._print("Connectivity: FAIL (cannot connect)")

        log_file = self._config.log_file
        self._print(f"Log file: {log_file}")
        if log_file.exists():
            try:
                with open(log_file, encoding="utf-8", errors="replace") as f:
                    tail = deque(f, maxlen=LOG_TAIL_LINES)
            except OSError as e:
                self._print(f"Could not read log file: {e}")
            else:
                self._print(f"-- Last {len(tail)} log lines --")
                for line in tail:
                    self._print(line.rstrip("\n"))
        else:
            self._print("Log file does not exist yet")

        try:
            palette = ColorStore(self._config.colors_path).read()
        except ColorStoreError as e:
            self._print(f"Colors: ERROR ({e})")
        else:
            self._print(f"Colors: OK ({len(palette.colors)} colors)")
            if palette.wallpaper:
                self._print(f"Wallpaper: {palette.wallpaper}")

    def _print(self, text: str) -> None:
        print(text, file=self._out)
