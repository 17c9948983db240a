"""Tests for the native messaging bridge.

Covers:
- Request handling on the stdio loop (one response per request)
- Framing violations and end of input
- Socket command translation
- Reconnecting to the broker
- run_bridge() with real stdin/stdout streams
"""

from __future__ import annotations

import asyncio
import io
import json
import struct
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from walrusfox import __version__
from walrusfox.bridge import Bridge, run_bridge
from walrusfox.broker import Broker
from walrusfox.config import Config
from walrusfox.protocol import MAX_FRAME_SIZE, Command, ProtocolError
from walrusfox.stdio import FrameWriter
from walrusfox.themes import ColorStore

INVALID = {
    "action": "action:invalid",
    "success": False,
    "error": None,
    "data": "Invalid action",
}


def _stdin(*chunks: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    reader.feed_eof()
    return reader


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def stdout() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def bridge(socket_path: Path, palette_file: Path, stdout: io.BytesIO) -> Bridge:
    return Bridge(
        socket_path,
        ColorStore(palette_file),
        FrameWriter(stdout),
        reconnect_interval=0.05,
    )


# =============================================================================
# Stdio Loop
# =============================================================================


class TestStdioLoop:
    """Tests for requests coming from the browser."""

    async def test_version(
        self, bridge: Bridge, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        await bridge.run_stdio_loop(_stdin(make_frame({"action": "debug:version"})))

        assert decode_frames(stdout.getvalue()) == [
            {"action": "debug:version", "success": True, "error": None, "data": __version__}
        ]

    async def test_colors(
        self,
        bridge: Bridge,
        stdout: io.BytesIO,
        sample_palette: dict[str, Any],
        make_frame,
        decode_frames,
    ) -> None:
        await bridge.run_stdio_loop(_stdin(make_frame({"action": "action:colors"})))

        assert decode_frames(stdout.getvalue()) == [
            {"action": "action:colors", "success": True, "error": None, "data": sample_palette}
        ]

    async def test_colors_failure(
        self, socket_path: Path, tmp_path: Path, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        bridge = Bridge(socket_path, ColorStore(tmp_path / "absent.json"), FrameWriter(stdout))

        await bridge.run_stdio_loop(_stdin(make_frame({"action": "action:colors"})))

        assert decode_frames(stdout.getvalue()) == [
            {
                "action": "action:colors",
                "success": False,
                "error": "Failed to load colors",
                "data": None,
            }
        ]

    async def test_theme_mode_reports_auto(
        self, bridge: Bridge, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        await bridge.run_stdio_loop(_stdin(make_frame({"action": "action:theme:mode"})))

        assert decode_frames(stdout.getvalue()) == [
            {"action": "action:theme:mode", "success": True, "error": None, "data": "auto"}
        ]

    async def test_unknown_action_then_more_requests(
        self, bridge: Bridge, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        await bridge.run_stdio_loop(
            _stdin(
                make_frame({"action": "bogus"}),
                make_frame({"action": "debug:version"}),
            )
        )

        messages = decode_frames(stdout.getvalue())
        assert messages[0] == INVALID
        assert messages[1]["data"] == __version__

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b'{"foo": 1}',
            b'{"action": 5}',
            b'["action:colors"]',
            b'"\xff"',
        ],
    )
    async def test_malformed_requests_get_invalid_response(
        self, bridge: Bridge, stdout: io.BytesIO, decode_frames, body: bytes
    ) -> None:
        frame = struct.pack("<I", len(body)) + body
        await bridge.run_stdio_loop(_stdin(frame))

        assert decode_frames(stdout.getvalue()) == [INVALID]

    async def test_extra_request_fields_are_ignored(
        self, bridge: Bridge, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        await bridge.run_stdio_loop(
            _stdin(make_frame({"action": "debug:version", "target": "x"}))
        )
        assert decode_frames(stdout.getvalue())[0]["success"] is True

    @pytest.mark.parametrize("length", [0, MAX_FRAME_SIZE + 1])
    async def test_invalid_length_is_fatal(
        self, bridge: Bridge, stdout: io.BytesIO, length: int
    ) -> None:
        with pytest.raises(ProtocolError):
            await bridge.run_stdio_loop(_stdin(struct.pack("<I", length)))
        assert stdout.getvalue() == b""

    async def test_end_of_input_sets_shutdown(self, bridge: Bridge) -> None:
        assert not bridge.shutdown.is_set()
        await bridge.run_stdio_loop(_stdin())
        assert bridge.shutdown.is_set()

    async def test_deeply_nested_body_gets_invalid_response(
        self, bridge: Bridge, stdout: io.BytesIO, make_frame, decode_frames
    ) -> None:
        body = b"[" * 65000
        await bridge.run_stdio_loop(
            _stdin(struct.pack("<I", len(body)) + body, make_frame({"action": "debug:version"}))
        )

        messages = decode_frames(stdout.getvalue())
        assert messages[0] == INVALID
        assert messages[1]["data"] == __version__

    async def test_socket_loop_failure_does_not_fail_run(
        self, bridge: Bridge, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_socket_loop() -> None:
            raise RuntimeError("socket loop crashed")

        monkeypatch.setattr(bridge, "run_socket_loop", broken_socket_loop)

        await asyncio.wait_for(bridge.run(_stdin()), 2.0)

        assert bridge.shutdown.is_set()

    async def test_run_stops_socket_loop_on_end_of_input(self, bridge: Bridge) -> None:
        await asyncio.wait_for(bridge.run(_stdin()), 2.0)
        assert bridge.shutdown.is_set()
        assert not bridge.is_connected


# =============================================================================
# Socket Commands
# =============================================================================


class TestHandleCommand:
    """Tests for commands relayed by the broker."""

    @pytest.mark.parametrize("token", ["dark", "light", "auto"])
    async def test_theme_mode_push(
        self, bridge: Bridge, stdout: io.BytesIO, decode_frames, token: str
    ) -> None:
        await bridge.handle_command(Command.parse(token))

        assert decode_frames(stdout.getvalue()) == [
            {"action": "action:theme:mode", "success": True, "error": None, "data": token}
        ]

    async def test_update_pushes_fresh_colors(
        self, bridge: Bridge, stdout: io.BytesIO, palette_file: Path, decode_frames
    ) -> None:
        palette_file.write_text('{"colors": ["#abcdef"], "wallpaper": null}')

        await bridge.handle_command(Command.parse("update"))

        assert decode_frames(stdout.getvalue()) == [
            {
                "action": "action:colors",
                "success": True,
                "error": None,
                "data": {"colors": ["#abcdef"], "wallpaper": None},
            }
        ]

    async def test_unknown_command_pushes_invalid(
        self, bridge: Bridge, stdout: io.BytesIO, decode_frames
    ) -> None:
        await bridge.handle_command(Command.parse("sepia"))
        assert decode_frames(stdout.getvalue()) == [INVALID]


class TestSocketLoop:
    """Tests for the broker connection."""

    async def test_retries_until_broker_appears(
        self, bridge: Bridge, socket_path: Path, stdout: io.BytesIO, decode_frames
    ) -> None:
        task = asyncio.create_task(bridge.run_socket_loop())
        # Let a few connection attempts fail first
        await asyncio.sleep(0.2)
        assert not bridge.is_connected

        broker = Broker(socket_path)
        await broker.start()
        try:
            await wait_until(lambda: bridge.is_connected and len(broker.client_ids) == 1)

            _, writer = await asyncio.open_unix_connection(str(socket_path))
            writer.write(b"dark\n")
            await writer.drain()

            await wait_until(stdout.getvalue)
            assert decode_frames(stdout.getvalue()) == [
                {"action": "action:theme:mode", "success": True, "error": None, "data": "dark"}
            ]
            writer.close()
            await writer.wait_closed()
        finally:
            bridge.shutdown.set()
            await broker.stop()

        await asyncio.wait_for(task, 2.0)

    async def test_reconnects_after_broker_restart(
        self, bridge: Bridge, socket_path: Path
    ) -> None:
        broker = Broker(socket_path)
        await broker.start()
        task = asyncio.create_task(bridge.run_socket_loop())
        try:
            await wait_until(lambda: bridge.is_connected)
            await broker.stop()
            await wait_until(lambda: not bridge.is_connected)

            await broker.start()
            await wait_until(lambda: bridge.is_connected)
        finally:
            bridge.shutdown.set()
            await broker.stop()

        await asyncio.wait_for(task, 2.0)

    async def test_shutdown_interrupts_retry_wait(
        self, socket_path: Path, palette_file: Path
    ) -> None:
        bridge = Bridge(
            socket_path,
            ColorStore(palette_file),
            FrameWriter(io.BytesIO()),
            reconnect_interval=60.0,
        )
        task = asyncio.create_task(bridge.run_socket_loop())
        await asyncio.sleep(0.05)

        bridge.shutdown.set()

        await asyncio.wait_for(task, 1.0)


# =============================================================================
# Oversized Responses
# =============================================================================


COLORS_FAILURE = {
    "action": "action:colors",
    "success": False,
    "error": "Failed to load colors",
    "data": None,
}


class TestOversizedPalette:
    """A palette too large for one frame is reported as a colors failure."""

    @pytest.fixture
    def huge_palette(self, palette_file: Path, sample_palette: dict[str, Any]) -> Path:
        palette_file.write_text(
            json.dumps({**sample_palette, "wallpaper": "x" * 70000}), encoding="utf-8"
        )
        return palette_file

    async def test_colors_request_gets_failure_and_loop_continues(
        self,
        bridge: Bridge,
        huge_palette: Path,
        stdout: io.BytesIO,
        make_frame,
        decode_frames,
    ) -> None:
        await bridge.run_stdio_loop(
            _stdin(
                make_frame({"action": "action:colors"}),
                make_frame({"action": "debug:version"}),
            )
        )

        messages = decode_frames(stdout.getvalue())
        assert messages[0] == COLORS_FAILURE
        assert messages[1]["data"] == __version__

    async def test_update_push_falls_back_to_failure(
        self, bridge: Bridge, huge_palette: Path, stdout: io.BytesIO, decode_frames
    ) -> None:
        response = await bridge.handle_command(Command.parse("update"))

        assert response.to_message() == COLORS_FAILURE
        assert decode_frames(stdout.getvalue()) == [COLORS_FAILURE]

    async def test_socket_loop_keeps_relaying_after_oversized_push(
        self,
        bridge: Bridge,
        huge_palette: Path,
        socket_path: Path,
        stdout: io.BytesIO,
        decode_frames,
    ) -> None:
        broker = Broker(socket_path)
        await broker.start()
        task = asyncio.create_task(bridge.run_socket_loop())
        try:
            await wait_until(lambda: bridge.is_connected and len(broker.client_ids) == 1)

            _, writer = await asyncio.open_unix_connection(str(socket_path))
            writer.write(b"update\ndark\n")
            await writer.drain()

            await wait_until(lambda: len(decode_frames(stdout.getvalue())) == 2)
            assert decode_frames(stdout.getvalue()) == [
                COLORS_FAILURE,
                {"action": "action:theme:mode", "success": True, "error": None, "data": "dark"},
            ]
            assert bridge.is_connected
            assert not task.done()
            writer.close()
            await writer.wait_closed()
        finally:
            bridge.shutdown.set()
            await broker.stop()

        await asyncio.wait_for(task, 2.0)


# =============================================================================
# run_bridge()
# =============================================================================


class TestRunBridge:
    """Tests for run_bridge() on real streams."""

    async def test_regular_file_stdin(
        self, config: Config, tmp_path: Path, make_frame, decode_frames
    ) -> None:
        requests = tmp_path / "requests.bin"
        requests.write_bytes(
            make_frame({"action": "debug:version"}) + make_frame({"action": "action:colors"})
        )
        stdout = io.BytesIO()

        with open(requests, "rb") as stdin:
            code = await asyncio.wait_for(run_bridge(config, stdin=stdin, stdout=stdout), 5.0)

        assert code == 0
        messages = decode_frames(stdout.getvalue())
        assert [m["action"] for m in messages] == ["debug:version", "action:colors"]
        assert all(m["success"] for m in messages)

    async def test_protocol_error_exit_code(self, config: Config, tmp_path: Path) -> None:
        requests = tmp_path / "bad.bin"
        requests.write_bytes(struct.pack("<I", MAX_FRAME_SIZE + 1))
        stdout = io.BytesIO()

        with open(requests, "rb") as stdin:
            code = await asyncio.wait_for(run_bridge(config, stdin=stdin, stdout=stdout), 5.0)

        assert code == 1
        assert stdout.getvalue() == b""
