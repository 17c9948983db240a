"""Entry point for the walrusfox command line.

Usage:
    walrusfox <command>
    python -m walrusfox <command>

Commands:
    install         Install the Firefox native messaging manifest (user scope)
    uninstall       Uninstall the Firefox native messaging manifest (user scope)
    print-manifest  Print the native messaging manifest JSON
    start           Run the broker in the foreground
    connect         Run the native messaging bridge on stdin/stdout
    update          Ask every connected browser to refetch colors
    dark/light/auto Set the theme mode on every connected browser
    health          Check connectivity to the broker
    diagnose        Print configuration, socket, log and palette diagnostics

Environment Variables:
    WALRUSFOX_SOCKET_PATH: Broker socket path
    WALRUSFOX_LOG_FILE: Log file path
    WALRUSFOX_COLORS_PATH: Color palette JSON file
    WALRUSFOX_LOG_LEVEL: Logging level (default: INFO)
    WALRUSFOX_MAX_COMMAND_LENGTH: Longest accepted socket line in bytes (default: 1024)
    WALRUSFOX_RECONNECT_INTERVAL: Seconds between bridge reconnects (default: 1.0)

Legacy environment variables (deprecated, use the names above instead):
    WALRUSFOX_SOCKET, WALRUSFOX_LOG, WALRUSFOX_COLORS
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable, Sequence

from walrusfox import __version__
from walrusfox.bridge import run_bridge
from walrusfox.broker import run_broker
from walrusfox.client import Client, ClientError
from walrusfox.config import Config, load_config
from walrusfox.installer import Installer, InstallError

logger = logging.getLogger(__name__)

COMMANDS: dict[str, str] = {
    "install": "Install the Firefox native messaging manifest (user scope)",
    "uninstall": "Uninstall the Firefox native messaging manifest (user scope)",
    "print-manifest": "Print the native messaging manifest JSON to stdout (no file changes)",
    "start": "Start the broker in the foreground",
    "connect": "Run the native messaging bridge on stdin/stdout",
    "update": "Trigger an update (refetch colors)",
    "dark": "Set theme mode to dark",
    "light": "Set theme mode to light",
    "auto": "Set theme mode to auto",
    "health": "Check connectivity to the local server",
    "diagnose": "Print diagnostics about configuration, socket, and logs",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="walrusfox",
        description="Linux-only native host for the Pywalfox extension (Firefox)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", metavar="<command>", required=True)
    for name, help_text in COMMANDS.items():
        subparsers.add_parser(name, help=help_text, description=help_text)
    return parser


def _client_action(config: Config, command: str) -> Callable[[], None]:
    client = Client(config)
    actions: dict[str, Callable[[], None]] = {
        "update": client.update,
        "dark": client.dark,
        "light": client.light,
        "auto": client.auto,
        "health": client.health,
        "diagnose": client.diagnose,
    }
    return actions[command]


def run_command(command: str, config: Config) -> int:
    """Run one CLI command.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    logger.debug("Running %s with %s", command, config.to_dict())

    if command == "start":
        return asyncio.run(run_broker(config))
    if command == "connect":
        return asyncio.run(run_bridge(config))

    try:
        if command in ("install", "uninstall", "print-manifest"):
            installer = Installer(config.socket_path)
            if command == "install":
                installer.install()
            elif command == "uninstall":
                installer.uninstall()
            else:
                installer.print_manifest()
        else:
            _client_action(config, command)()
    except (ClientError, InstallError) as e:
        logger.error("error: %s", e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = load_config()
    if config is None:
        return 1

    config.setup_logging()

    try:
        return run_command(args.command, config)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
