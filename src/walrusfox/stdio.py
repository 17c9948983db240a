"""Stdin/stdout plumbing for the native messaging channel.

Firefox talks to the host over the process's stdin/stdout. This module
provides:
- create_stdin_reader(): an asyncio StreamReader over stdin
- ThreadedStdinReader: feeds that StreamReader from a blocking thread when
  stdin cannot be registered with the event loop (regular files, some ttys)
- FrameWriter: writes whole native messaging frames to stdout
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import Any, BinaryIO

from walrusfox.protocol import FRAME_HEADER_SIZE, MAX_FRAME_SIZE, READ_CHUNK_SIZE, encode_frame

logger = logging.getLogger(__name__)

STREAM_LIMIT = MAX_FRAME_SIZE + FRAME_HEADER_SIZE


class ThreadedStdinReader:
    """Async stdin reader backed by a daemon thread.

    ``loop.connect_read_pipe()`` only accepts pipes, sockets and character
    devices. When stdin is something else (a redirected regular file, for
    instance) this class performs blocking reads on a daemon thread and feeds
    the chunks into an asyncio StreamReader in a thread-safe manner.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        stream: BinaryIO,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        self._reader = reader
        self._stream = stream
        self._chunk_size = chunk_size
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._is_running = False

    def _reader_thread(self) -> None:
        """Read chunks until EOF and hand them to the event loop."""
        assert self._loop is not None
        self._is_running = True
        error: Exception | None = None
        # read1 returns as soon as any data is available
        read = getattr(self._stream, "read1", self._stream.read)
        try:
            while True:
                chunk = read(self._chunk_size)
                if not chunk:
                    logger.info("ThreadedStdinReader: stdin EOF received")
                    break
                self._loop.call_soon_threadsafe(self._reader.feed_data, chunk)
        except Exception as e:
            logger.error(
                "ThreadedStdinReader crashed: %s: %s",
                type(e).__name__,
                e,
                exc_info=True,
            )
            error = e
        finally:
            self._is_running = False
            if error is not None:
                self._loop.call_soon_threadsafe(self._reader.set_exception, error)
            else:
                self._loop.call_soon_threadsafe(self._reader.feed_eof)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start the background reader thread.

        Args:
            loop: The event loop that owns the StreamReader
        """
        self._loop = loop
        self._thread = threading.Thread(
            target=self._reader_thread,
            name="walrusfox-stdin",
            daemon=True,
        )
        self._thread.start()

    def is_running(self) -> bool:
        """Check if the reader thread is currently running."""
        return self._is_running


async def create_stdin_reader(stdin: BinaryIO | None = None) -> asyncio.StreamReader:
    """Create an async reader for stdin.

    Uses ``connect_read_pipe()`` when the stream supports it and falls back
    to ThreadedStdinReader otherwise.

    Args:
        stdin: Binary stream to read (defaults to sys.stdin.buffer)

    Returns:
        A StreamReader delivering the raw stdin bytes
    """
    stream = stdin if stdin is not None else sys.stdin.buffer
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        await loop.connect_read_pipe(lambda: protocol, stream)
    except (ValueError, OSError) as e:
        logger.debug("stdin is not a pipe (%s), reading it on a thread", e)
        ThreadedStdinReader(reader, stream).start(loop)
    return reader


class FrameWriter:
    """Writes native messaging frames to stdout.

    The bridge answers requests and pushes unsolicited updates from two
    different loops; the lock keeps each frame contiguous on the stream.
    """

    def __init__(self, stream: BinaryIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout.buffer
        self._lock = asyncio.Lock()

    async def send(self, message: Any) -> None:
        """Encode and write one frame.

        Raises:
            ProtocolError: If the message is too large for a frame
            OSError: If stdout is closed
        """
        frame = encode_frame(message)
        async with self._lock:
            self._stream.write(frame)
            self._stream.flush()
        logger.info("Sending => %s", message)
