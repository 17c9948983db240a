"""Unix domain socket broker that relays theme commands between peers.

Every connected peer (browser bridges, CLI triggers, the desktop theming
hook) is registered under a fresh client id. Each newline-terminated line a
peer sends is written to every *other* peer registered at that moment.
Delivery is best effort: nothing is queued for absent or slow peers, and the
broker does not interpret the lines it relays.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import signal
from pathlib import Path

from walrusfox.config import Config
from walrusfox.protocol import DEFAULT_MAX_COMMAND_LENGTH, READ_CHUNK_SIZE, LineBuffer
from walrusfox.startup import cleanup_stale_socket

logger = logging.getLogger(__name__)

SOCKET_MODE = 0o600


class BrokerError(Exception):
    """Raised when the broker cannot bind its socket path."""


class ClientHandle:
    """Outbound side of one registered connection.

    Writes are serialized by a per-client lock so that broadcasts coming from
    different source connections never interleave on the same socket.
    """

    def __init__(self, client_id: int, writer: asyncio.StreamWriter) -> None:
        self.client_id = client_id
        self._writer = writer
        self._lock = asyncio.Lock()

    async def send(self, payload: bytes) -> None:
        async with self._lock:
            self._writer.write(payload)
            await self._writer.drain()


class Broker:
    """Relay server on a Unix domain socket.

    Attributes:
        socket_path: Filesystem path the broker listens on
        max_line_length: Longest line (bytes) that is relayed
    """

    def __init__(
        self,
        socket_path: str | Path,
        *,
        max_line_length: int = DEFAULT_MAX_COMMAND_LENGTH,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.max_line_length = max_line_length

        self._server: asyncio.AbstractServer | None = None
        self._running = False
        self._clients: dict[int, ClientHandle] = {}
        self._clients_lock = asyncio.Lock()
        self._client_ids = itertools.count()
        self._connection_tasks: set[asyncio.Task[None]] = set()
        self._stop_requested = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Check if the broker is accepting connections."""
        return self._running

    @property
    def client_ids(self) -> list[int]:
        """Ids of the currently registered clients."""
        return sorted(self._clients)

    async def start(self) -> None:
        """Bind the socket and start accepting connections.

        A leftover socket file with no listener behind it is removed first.

        Raises:
            BrokerError: If another broker owns the path or the bind fails
        """
        if self._running:
            return

        if not cleanup_stale_socket(self.socket_path):
            raise BrokerError(f"Socket path {self.socket_path} is in use")

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
            )
        except OSError as e:
            raise BrokerError(f"Failed to bind {self.socket_path}: {e}") from e

        try:
            os.chmod(self.socket_path, SOCKET_MODE)
        except OSError as e:
            logger.warning("Failed to set socket permissions to 0600: %s", e)

        self._running = True
        self._stop_requested.clear()
        logger.info("Broker listening on %s", self.socket_path)

    async def stop(self) -> None:
        """Stop accepting, drop every connection and remove the socket file."""
        if not self._running:
            return

        self._running = False

        if self._server is not None:
            self._server.close()

        tasks = list(self._connection_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        self._remove_socket_file()
        logger.info("Broker stopped")

    def request_stop(self) -> None:
        """Ask serve_forever() to return. Safe to call from a signal handler."""
        self._stop_requested.set()

    async def serve_forever(self, *, handle_signals: bool = True) -> None:
        """Run the broker until request_stop() or SIGINT/SIGTERM.

        Args:
            handle_signals: Install SIGINT/SIGTERM handlers on the running loop
        """
        await self.start()

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_stop)
                    installed.append(sig)
                except (NotImplementedError, RuntimeError, ValueError) as e:
                    logger.debug("Cannot install handler for %s: %s", sig.name, e)

        try:
            await self._stop_requested.wait()
            logger.info("Shutdown requested")
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    async def broadcast(self, source_id: int, line: str) -> int:
        """Write a line to every registered client except its source.

        The registry lock is only held while the target list is copied; all
        writes happen after it is released. A failed write is logged and
        the remaining targets still get the line.

        Args:
            source_id: Client id the line came from
            line: The line to relay, without its terminator

        Returns:
            Number of clients the line was written to
        """
        async with self._clients_lock:
            targets = [
                handle for cid, handle in self._clients.items() if cid != source_id
            ]

        payload = (line + "\n").encode("utf-8")
        delivered = 0
        for target in targets:
            try:
                await target.send(payload)
                delivered += 1
            except (ConnectionResetError, BrokenPipeError, OSError) as e:
                logger.warning(
                    "Broadcast write error to client %d: %s", target.client_id, e
                )

        logger.debug(
            "Relayed %r from client %d to %d client(s)", line, source_id, delivered
        )
        return delivered

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Register a connection, relay its lines, deregister on disconnect.

        Args:
            reader: Stream reader for incoming lines
            writer: Stream writer other clients' broadcasts go to
        """
        client_id = next(self._client_ids)
        task = asyncio.current_task()
        if task is not None:
            self._connection_tasks.add(task)

        async with self._clients_lock:
            self._clients[client_id] = ClientHandle(client_id, writer)
        logger.info("Client %d connected", client_id)

        lines = LineBuffer(self.max_line_length, label=f"client {client_id}")

        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break

                for raw in lines.feed(data):
                    try:
                        line = raw.decode("utf-8")
                    except UnicodeDecodeError as e:
                        logger.warning(
                            "UTF-8 decode error from client %d: %s", client_id, e
                        )
                        continue
                    await self.broadcast(client_id, line)

        except asyncio.CancelledError:
            logger.debug("Handler for client %d cancelled", client_id)
        except OSError as e:
            logger.warning("Error reading from client %d: %s", client_id, e)
        finally:
            async with self._clients_lock:
                self._clients.pop(client_id, None)
            if task is not None:
                self._connection_tasks.discard(task)
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            logger.info("Client %d disconnected", client_id)

    def _remove_socket_file(self) -> None:
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove socket file %s: %s", self.socket_path, e)


async def run_broker(config: Config) -> int:
    """Run the broker in the foreground until interrupted.

    Returns:
        Exit code (0 for success, 1 if the socket could not be bound)
    """
    broker = Broker(config.socket_path, max_line_length=config.max_command_length)
    try:
        await broker.serve_forever()
    except BrokerError as e:
        logger.error("Broker failed to start: %s", e)
        return 1
    return 0
