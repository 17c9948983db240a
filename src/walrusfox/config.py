"""Configuration management for walrusfox.

This module provides centralized configuration with support for:
- Environment variables (primary)
- Sensible XDG-based defaults for all paths
- Type validation via Pydantic
- Easy testing through config overrides

Environment Variables:
    WALRUSFOX_SOCKET_PATH: Broker socket (default: $XDG_RUNTIME_DIR/walrusfox/walrusfox.sock)
    WALRUSFOX_LOG_FILE: Log file (default: $XDG_STATE_HOME/walrusfox/walrusfox.log)
    WALRUSFOX_COLORS_PATH: Palette file (default: ~/.cache/wal/walrusfox.json)
    WALRUSFOX_LOG_LEVEL: Logging level (default: INFO)
    WALRUSFOX_MAX_COMMAND_LENGTH: Longest accepted socket line in bytes (default: 1024)
    WALRUSFOX_RECONNECT_INTERVAL: Seconds between bridge reconnects (default: 1.0)

Usage:
    from walrusfox.config import get_config, Config

    config = get_config()
    socket_path = config.socket_path

    # For testing, create a custom config
    test_config = Config(socket_path="/tmp/wf-test.sock")
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from walrusfox.protocol import DEFAULT_MAX_COMMAND_LENGTH, MAX_FRAME_SIZE

logger = logging.getLogger(__name__)

APP_NAME = "walrusfox"

# Native messaging identity; the host name matches the one the extension expects
HOST_NAME = "pywalfox"
ALLOWED_EXTENSION = "pywalfox@frewacom.org"

FALLBACK_SOCKET_PATH = Path("/tmp/walrusfox.sock")


def ensure_private_dir(directory: Path) -> None:
    """Create a directory readable only by the current user, if missing."""
    if directory.exists():
        return
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Failed to create directory %s: %s", directory, e)


def default_socket_path() -> Path:
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        directory = Path(runtime_dir) / APP_NAME
        ensure_private_dir(directory)
        return directory / f"{APP_NAME}.sock"
    return FALLBACK_SOCKET_PATH


def default_log_file() -> Path:
    state_home = os.environ.get("XDG_STATE_HOME")
    base = Path(state_home) if state_home else Path.home() / ".local" / "state"
    return base / APP_NAME / f"{APP_NAME}.log"


def default_colors_path() -> Path:
    return Path.home() / ".cache" / "wal" / f"{APP_NAME}.json"


class Config(BaseSettings):
    """Application configuration with environment variable support.

    All settings can be overridden via environment variables prefixed with
    WALRUSFOX_. For example, WALRUSFOX_SOCKET_PATH=/tmp/x.sock sets socket_path.

    Attributes:
        socket_path: Filesystem path of the broker's Unix domain socket
        log_file: File the log is appended to
        colors_path: JSON palette written by the desktop theming tool
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        max_command_length: Longest socket line (bytes) relayed or interpreted
        reconnect_interval: Seconds the bridge waits between connect attempts
    """

    model_config = SettingsConfigDict(
        env_prefix="WALRUSFOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    socket_path: Path = Field(
        default_factory=default_socket_path,
        description="Filesystem path of the broker socket",
    )
    log_file: Path = Field(
        default_factory=default_log_file,
        description="Log file path",
    )
    colors_path: Path = Field(
        default_factory=default_colors_path,
        description="Color palette JSON file",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    max_command_length: int = Field(
        default=DEFAULT_MAX_COMMAND_LENGTH,
        ge=1,
        le=MAX_FRAME_SIZE,
        description="Maximum socket line length in bytes",
    )
    reconnect_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between bridge reconnect attempts",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    def setup_logging(self) -> None:
        """Configure logging based on config settings.

        Appends to log_file, falling back to stderr when the file cannot be
        opened. Never logs to stdout, which carries native messaging frames.
        """
        handler: logging.Handler
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(self.log_file, encoding="utf-8")
        except OSError:
            handler = logging.StreamHandler(sys.stderr)

        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[handler],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging/debugging.

        Returns:
            Dictionary of all config values
        """
        return {
            "socket_path": str(self.socket_path),
            "log_file": str(self.log_file),
            "colors_path": str(self.colors_path),
            "log_level": self.log_level,
            "max_command_length": self.max_command_length,
            "reconnect_interval": self.reconnect_interval,
        }


# Module-level singleton instance
_config_instance: Config | None = None


def get_config() -> Config:
    """Get the singleton configuration instance.

    Creates the config on first call, caching it for subsequent calls.
    The config is loaded from environment variables and optional .env file.

    Note:
        For testing, use set_config() to inject a test configuration,
        or call reset_config() to force reloading from environment.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def set_config(config: Config) -> None:
    """Set the configuration instance (primarily for testing)."""
    global _config_instance
    _config_instance = config


def reset_config() -> None:
    """Reset the configuration singleton.

    Forces the next get_config() call to reload from environment.
    """
    global _config_instance
    _config_instance = None


# Older releases read these shorter names
LEGACY_ENV_VARS = {
    "WALRUSFOX_SOCKET": "WALRUSFOX_SOCKET_PATH",
    "WALRUSFOX_LOG": "WALRUSFOX_LOG_FILE",
    "WALRUSFOX_COLORS": "WALRUSFOX_COLORS_PATH",
}


def migrate_legacy_env_vars() -> None:
    """Copy legacy environment variables to their current names.

    A current name that is already set wins over its legacy counterpart.
    """
    for legacy_var, new_var in LEGACY_ENV_VARS.items():
        legacy_value = os.environ.get(legacy_var)
        if legacy_value is not None and os.environ.get(new_var) is None:
            os.environ[new_var] = legacy_value


def load_config() -> Config | None:
    """Load configuration for a command line entry point.

    Migrates legacy variables, reloads from the environment and installs the
    result as the singleton. Validation errors are reported on stderr.

    Returns:
        The loaded Config, or None if the environment holds invalid values
    """
    migrate_legacy_env_vars()
    reset_config()
    try:
        config = get_config()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    return config
