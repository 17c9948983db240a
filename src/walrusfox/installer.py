"""Installs the Firefox native messaging manifest and its helpers (user scope).

Files managed:
- ~/.mozilla/native-messaging-hosts/pywalfox.json: the host manifest
- ~/.mozilla/native-messaging-hosts/walrusfox.sh: wrapper the manifest points to
- ~/.config/systemd/user/walrusfox.service: user unit that runs the broker
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import sys
from pathlib import Path
from typing import Any, TextIO

from walrusfox.config import ALLOWED_EXTENSION, APP_NAME, HOST_NAME

logger = logging.getLogger(__name__)

MANIFEST_DESCRIPTION = "Automatically theme your browser using external colors"
SCRIPT_MODE = 0o755


class InstallError(Exception):
    """Raised when an installed file cannot be written or removed."""


def default_command() -> str:
    """Shell command that launches this CLI."""
    exe = shutil.which(APP_NAME)
    if exe:
        return shlex.quote(exe)
    return f"{shlex.quote(sys.executable)} -m {APP_NAME}"


class Installer:
    """Writes and removes the native host files under a home directory."""

    def __init__(
        self,
        socket_path: str | Path,
        *,
        home: Path | None = None,
        command: str | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.home = home if home is not None else Path.home()
        self.command = command if command is not None else default_command()
        self._out = out if out is not None else sys.stdout

    @property
    def native_hosts_dir(self) -> Path:
        return self.home / ".mozilla" / "native-messaging-hosts"

    @property
    def manifest_path(self) -> Path:
        return self.native_hosts_dir / f"{HOST_NAME}.json"

    @property
    def script_path(self) -> Path:
        return self.native_hosts_dir / f"{APP_NAME}.sh"

    @property
    def unit_path(self) -> Path:
        return self.home / ".config" / "systemd" / "user" / f"{APP_NAME}.service"

    def build_manifest(self) -> dict[str, Any]:
        return {
            "name": HOST_NAME,
            "description": MANIFEST_DESCRIPTION,
            "path": str(self.script_path),
            "type": "stdio",
            "allowed_extensions": [ALLOWED_EXTENSION],
        }

    def build_script(self) -> str:
        return f"#!/usr/bin/env bash\nexec {self.command} connect\n"

    def build_unit(self) -> str:
        sock = shlex.quote(str(self.socket_path))
        return (
            "[Unit]\n"
            "Description=WalrusFox Native Host\n"
            "After=default.target\n"
            "\n"
            "[Service]\n"
            f"ExecStartPre=/usr/bin/rm -f {sock}\n"
            f"ExecStart={self.command} start\n"
            f"ExecStopPost=/usr/bin/rm -f {sock}\n"
            "\n"
            "[Install]\n"
            "WantedBy=default.target\n"
        )

    def install(self) -> None:
        """Install the systemd unit, the wrapper script and the manifest.

        Raises:
            InstallError: If any file cannot be written
        """
        self._write(self.unit_path, self.build_unit())
        self._print(f"Installed systemd user unit at {self.unit_path}")
        self._print(f"Hint: enable it with: systemctl --user enable --now {APP_NAME}.service")

        self._write(self.script_path, self.build_script())
        try:
            os.chmod(self.script_path, SCRIPT_MODE)
        except OSError as e:
            logger.warning("Failed to set script permissions to 0755: %s", e)
        self._print(f"Installed extension entry point script at {self.script_path}")

        self._write(self.manifest_path, self.manifest_json())
        self._print(f"Installed manifest at {self.manifest_path}")

    def uninstall(self) -> None:
        """Remove every installed file that exists.

        Raises:
            InstallError: If an existing file cannot be removed
        """
        for label, path in (
            ("systemd user unit", self.unit_path),
            ("extension entry point script", self.script_path),
            ("manifest", self.manifest_path),
        ):
            if not path.exists():
                self._print(f"{label.capitalize()} not found at {path}")
                continue
            try:
                path.unlink()
            except OSError as e:
                raise InstallError(f"removing {path}: {e}") from e
            self._print(f"Removed {label} {path}")

    def manifest_json(self) -> str:
        return json.dumps(self.build_manifest(), indent=2) + "\n"

    def print_manifest(self) -> None:
        """Print the manifest without touching any file."""
        self._out.write(self.manifest_json())

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise InstallError(f"writing {path}: {e}") from e

    def _print(self, text: str) -> None:
        print(text, file=self._out)
