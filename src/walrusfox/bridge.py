"""Bridge between the browser's native messaging channel and the broker.

One bridge runs per browser instance. It owns two loops:
- stdio loop: answers framed JSON requests from the browser
- socket loop: stays connected to the broker (reconnecting forever) and turns
  relayed theme commands into unsolicited responses for the browser

The loops share nothing but a shutdown event and the stdout frame writer.
End of input on stdin sets the event and stops both.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import BinaryIO

from pydantic import ValidationError

from walrusfox import __version__
from walrusfox.config import Config
from walrusfox.protocol import (
    COLORS_ERROR_MESSAGE,
    DEFAULT_MAX_COMMAND_LENGTH,
    DEFAULT_THEME_MODE,
    READ_CHUNK_SIZE,
    BrowserAction,
    Command,
    LineBuffer,
    ProtocolError,
    Request,
    Response,
    SocketCommand,
    decode_message,
    read_frame,
)
from walrusfox.stdio import FrameWriter, create_stdin_reader
from walrusfox.themes import ColorStore, ColorStoreError

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL: float = 1.0  # seconds


class Bridge:
    """Native messaging host paired with a broker client connection.

    Attributes:
        socket_path: Broker socket to connect to
        reconnect_interval: Seconds to wait between connect attempts
        max_line_length: Longest socket line (bytes) that is interpreted
    """

    def __init__(
        self,
        socket_path: str | Path,
        color_store: ColorStore,
        writer: FrameWriter,
        *,
        shutdown: asyncio.Event | None = None,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        max_line_length: int = DEFAULT_MAX_COMMAND_LENGTH,
        version: str = __version__,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.reconnect_interval = reconnect_interval
        self.max_line_length = max_line_length
        self._color_store = color_store
        self._writer = writer
        self._shutdown = shutdown if shutdown is not None else asyncio.Event()
        self._version = version
        self._connected = False

    @property
    def shutdown(self) -> asyncio.Event:
        return self._shutdown

    @property
    def is_connected(self) -> bool:
        """Check if the socket loop currently holds a broker connection."""
        return self._connected

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self, stdin: asyncio.StreamReader) -> None:
        """Run both loops until stdin closes.

        Raises:
            ProtocolError: If the browser breaks the framing rules
        """
        socket_task = asyncio.create_task(
            self.run_socket_loop(), name="walrusfox-bridge-socket"
        )
        try:
            await self.run_stdio_loop(stdin)
        finally:
            self._shutdown.set()
            socket_task.cancel()
            try:
                await socket_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Socket loop failed: %s: %s", type(e).__name__, e)

    # =========================================================================
    # Stdio loop
    # =========================================================================

    async def run_stdio_loop(self, stdin: asyncio.StreamReader) -> None:
        """Answer browser requests until end of input.

        Raises:
            ProtocolError: On an invalid frame length or truncated frame
        """
        while True:
            body = await read_frame(stdin)
            if body is None:
                logger.warning("stdin closed; initiating graceful shutdown")
                self._shutdown.set()
                return
            await self.handle_request(body)

    async def handle_request(self, body: bytes) -> Response:
        """Decode one request body, dispatch it and send exactly one response."""
        try:
            request = Request.model_validate(decode_message(body))
        except (ValueError, ValidationError) as e:
            logger.warning("Malformed request from browser: %s", e)
            response = Response.invalid()
        else:
            action = BrowserAction.decode(request.action)
            if action is BrowserAction.INVALID:
                logger.warning("Browser sent invalid action: %s", request.action)
            else:
                logger.info("Action received %s", action.value)
            response = self.dispatch(action)

        return await self._send(response)

    async def _send(self, response: Response) -> Response:
        """Write a response frame, substituting a failure if it cannot be framed.

        Returns:
            The response actually written
        """
        try:
            await self._writer.send(response.to_message())
            return response
        except ProtocolError as e:
            logger.error("Cannot send %s response: %s", response.action, e)

        if response.action == BrowserAction.COLORS.value:
            fallback = Response.failure(BrowserAction.COLORS, COLORS_ERROR_MESSAGE)
        else:
            fallback = Response.invalid()
        await self._writer.send(fallback.to_message())
        return fallback

    def dispatch(self, action: BrowserAction) -> Response:
        if action is BrowserAction.VERSION:
            return Response.ok(action, self._version)
        if action is BrowserAction.COLORS:
            return self.colors_response()
        if action is BrowserAction.THEME_MODE:
            return Response.ok(action, DEFAULT_THEME_MODE)
        return Response.invalid()

    def colors_response(self) -> Response:
        """Read the palette and build the colors response."""
        try:
            palette = self._color_store.read()
        except ColorStoreError as e:
            logger.error("Failed to load colors: %s", e)
            return Response.failure(BrowserAction.COLORS, COLORS_ERROR_MESSAGE)
        return Response.ok(BrowserAction.COLORS, palette.to_data())

    # =========================================================================
    # Socket loop
    # =========================================================================

    async def run_socket_loop(self) -> None:
        """Keep a broker connection open until shutdown.

        There is no retry ceiling: the broker may not have started yet or
        may be restarting.
        """
        while not self._shutdown.is_set():
            try:
                reader, writer = await asyncio.open_unix_connection(
                    str(self.socket_path)
                )
            except OSError as e:
                logger.warning(
                    "Cannot connect to %s: %s (will retry)", self.socket_path, e
                )
            else:
                self._connected = True
                logger.info("Connected to broker at %s", self.socket_path)
                try:
                    await self._read_commands(reader)
                    logger.info("Broker closed the connection")
                except OSError as e:
                    logger.warning("Socket handler ended: %s", e)
                finally:
                    self._connected = False
                    writer.close()
                    with contextlib.suppress(OSError):
                        await writer.wait_closed()

            if await self._wait_for_shutdown(self.reconnect_interval):
                break

        logger.info("Socket loop stopped")

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout, waking early on shutdown.

        Returns:
            True if shutdown was requested
        """
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _read_commands(self, reader: asyncio.StreamReader) -> None:
        lines = LineBuffer(self.max_line_length, label="broker")
        while True:
            data = await reader.read(READ_CHUNK_SIZE)
            if not data:
                return
            for raw in lines.feed(data):
                line = raw.decode("utf-8", errors="replace")
                await self.handle_command(Command.parse(line))

    async def handle_command(self, command: Command) -> Response:
        """Translate a relayed socket command into a push to the browser."""
        logger.info("Received command: %s", command.token)
        if command.kind is SocketCommand.UPDATE:
            response = self.colors_response()
        elif command.is_theme_mode:
            response = Response.ok(BrowserAction.THEME_MODE, command.kind.value)
        else:
            logger.warning("Unknown socket command: %r", command.token)
            response = Response.invalid()

        return await self._send(response)


async def run_bridge(
    config: Config,
    *,
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
) -> int:
    """Run the bridge on stdin/stdout.

    Args:
        config: Application configuration
        stdin: Binary input stream (defaults to sys.stdin.buffer)
        stdout: Binary output stream (defaults to sys.stdout.buffer)

    Returns:
        Exit code (0 on end of input, 1 on protocol or I/O failure)
    """
    bridge = Bridge(
        config.socket_path,
        ColorStore(config.colors_path),
        FrameWriter(stdout),
        reconnect_interval=config.reconnect_interval,
        max_line_length=config.max_command_length,
    )

    try:
        reader = await create_stdin_reader(stdin)
        await bridge.run(reader)
        return 0
    except ProtocolError as e:
        logger.error("Native messaging protocol violation: %s", e)
        return 1
    except OSError as e:
        logger.error("Bridge I/O error: %s", e)
        return 1
