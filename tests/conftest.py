"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import json
import shutil
import struct
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from walrusfox.config import Config, reset_config

SAMPLE_COLORS = [
    "#1d1f21", "#cc6666", "#b5bd68", "#f0c674",
    "#81a2be", "#b294bb", "#8abeb7", "#c5c8c6",
    "#969896", "#cc6666", "#b5bd68", "#f0c674",
    "#81a2be", "#b294bb", "#8abeb7", "#ffffff",
]
SAMPLE_WALLPAPER = "/home/user/Pictures/wallpaper.png"


def _decode_frames(data: bytes) -> list[Any]:
    messages: list[Any] = []
    offset = 0
    while offset < len(data):
        (length,) = struct.unpack_from("<I", data, offset)
        offset += 4
        messages.append(json.loads(data[offset : offset + length]))
        offset += length
    return messages


def _make_frame(message: Any) -> bytes:
    body = json.dumps(message).encode("utf-8")
    return struct.pack("<I", len(body)) + body


@pytest.fixture(autouse=True)
def _reset_config_singleton() -> Iterator[None]:
    reset_config()
    yield
    reset_config()


@pytest.fixture
def short_tmp_dir() -> Iterator[Path]:
    """Temporary directory with a short path.

    AF_UNIX socket paths are limited to about 108 bytes, which pytest's
    tmp_path can exceed for long test names.
    """
    path = Path(tempfile.mkdtemp(prefix="wf-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(short_tmp_dir: Path) -> Path:
    return short_tmp_dir / "wf.sock"


@pytest.fixture
def sample_palette() -> dict[str, Any]:
    """Contents of palette_file: 16 colors and a wallpaper."""
    return {"colors": list(SAMPLE_COLORS), "wallpaper": SAMPLE_WALLPAPER}


@pytest.fixture
def palette_file(tmp_path: Path, sample_palette: dict[str, Any]) -> Path:
    path = tmp_path / "walrusfox.json"
    path.write_text(json.dumps(sample_palette), encoding="utf-8")
    return path


@pytest.fixture
def config(socket_path: Path, palette_file: Path, tmp_path: Path) -> Config:
    return Config(
        socket_path=socket_path,
        colors_path=palette_file,
        log_file=tmp_path / "walrusfox.log",
        reconnect_interval=0.05,
    )


@pytest.fixture
def decode_frames() -> Callable[[bytes], list[Any]]:
    """Split a captured stdout byte string into decoded JSON messages."""
    return _decode_frames


@pytest.fixture
def make_frame() -> Callable[[Any], bytes]:
    """Encode a JSON value as a native messaging frame."""
    return _make_frame
