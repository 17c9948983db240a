"""Startup utilities for handling stale broker sockets."""

import logging
import socket
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 1.0


def is_socket_live(path: str | Path) -> bool:
    """Check whether a listener is accepting connections on a socket path."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.settimeout(CONNECT_TIMEOUT)
        try:
            s.connect(str(path))
            return True
        except OSError:
            return False


def cleanup_stale_socket(path: str | Path) -> bool:
    """Remove a socket file left behind by a broker that is no longer running.

    Args:
        path: The socket path the broker wants to bind

    Returns:
        True if the path is now free to bind, False if a live broker owns it
        or the file could not be removed
    """
    path = Path(path)
    try:
        mode = path.lstat().st_mode
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning("Cannot inspect %s: %s", path, e)
        return False

    if not stat.S_ISSOCK(mode):
        logger.warning("%s exists and is not a socket, refusing to remove it", path)
        return False

    if is_socket_live(path):
        logger.warning("A broker is already listening on %s", path)
        return False

    logger.info("Removing stale socket file %s", path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove stale socket %s: %s", path, e)
        return False
    return True
