"""Read-only access to the color palette written by the desktop theming tool.

The palette file is a JSON document of the form::

    {"colors": ["#1d1f21", ...], "wallpaper": "/path/to/wallpaper.png"}

It is re-read on every request so the browser always sees the latest scheme.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

# pywal-style palettes carry 16 terminal colors
EXPECTED_COLOR_COUNT = 16


class ColorStoreError(Exception):
    """Raised when the palette file is missing, unreadable, or malformed."""


class ColorPalette(BaseModel):
    """Snapshot of the palette at the time it was read."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    colors: tuple[str, ...]
    wallpaper: str | None = None

    def to_data(self) -> dict[str, Any]:
        """Payload for the colors response sent to the browser."""
        return {"colors": list(self.colors), "wallpaper": self.wallpaper}


class ColorStore:
    """Reads ColorPalette snapshots from a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> ColorPalette:
        """Load the current palette.

        Raises:
            ColorStoreError: If the file is absent or not a valid palette
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ColorStoreError(f"Color definition not found at {self._path}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ColorStoreError(f"Reading {self._path}: {e}") from e

        try:
            palette = ColorPalette.model_validate_json(raw)
        except ValidationError as e:
            raise ColorStoreError(
                f"Invalid color definition in {self._path} "
                f"({e.error_count()} validation error(s))"
            ) from e

        if len(palette.colors) < EXPECTED_COLOR_COUNT:
            logger.warning(
                "Color definition contains fewer than %d colors", EXPECTED_COLOR_COUNT
            )

        logger.info("Loaded %d colors from %s", len(palette.colors), self._path)
        return palette
