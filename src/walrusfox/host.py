"""Native messaging host entry point launched by Firefox.

Firefox starts the host as ``walrusfox-ext <manifest_path> <extension_id>``.
The host refuses callers other than the Pywalfox extension, starts an
embedded broker when none is reachable, then runs the bridge on
stdin/stdout until the browser closes the channel.

Usage:
    walrusfox-ext /path/to/pywalfox.json pywalfox@frewacom.org
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence

from walrusfox.bridge import run_bridge
from walrusfox.broker import Broker, BrokerError
from walrusfox.config import ALLOWED_EXTENSION, Config, load_config
from walrusfox.startup import is_socket_live

logger = logging.getLogger(__name__)


def is_allowed_caller(argv: Sequence[str]) -> bool:
    """Check the extension id Firefox passes as the second argument.

    Launches without an extension id (manual runs) are allowed.
    """
    if len(argv) < 3:
        return True
    return argv[2] == ALLOWED_EXTENSION


async def maybe_start_embedded_broker(config: Config) -> Broker | None:
    """Start an in-process broker if nothing is listening on the socket.

    Returns:
        The started broker, or None if one is already running elsewhere or
        the embedded one could not be started
    """
    if is_socket_live(config.socket_path):
        return None

    broker = Broker(config.socket_path, max_line_length=config.max_command_length)
    try:
        await broker.start()
    except BrokerError as e:
        logger.warning("Embedded broker failed to start: %s", e)
        return None
    logger.info("Started embedded broker on %s", config.socket_path)
    return broker


async def run_host(config: Config) -> int:
    """Run the bridge, with an embedded broker when needed.

    Returns:
        The bridge's exit code
    """
    broker = await maybe_start_embedded_broker(config)
    try:
        return await run_bridge(config)
    finally:
        if broker is not None:
            await broker.stop()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = list(sys.argv if argv is None else argv)

    config = load_config()
    if config is None:
        return 1
    config.setup_logging()

    logger.info("Native host called with: %s", args)
    if not is_allowed_caller(args):
        logger.warning("Blocked origin: %s", args[2])
        return 1

    try:
        return asyncio.run(run_host(config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
