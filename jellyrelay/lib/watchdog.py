"""Systemd notify support for the relay service.

READY=1 once the Jellyfin socket is up, WATCHDOG=1 heartbeats while running,
STATUS= lines for `systemctl status`, STOPPING=1 on shutdown.
Silently no-ops when NOTIFY_SOCKET is unset (dev mode, tests).

Usage:
    from jellyrelay.lib.watchdog import sd_notify, watchdog_loop
    sd_notify("READY=1")
    asyncio.create_task(watchdog_loop())
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def _notify_socket() -> str | None:
    return os.environ.get("NOTIFY_SOCKET")


def sd_notify(msg: str):
    """Send a notification message to the systemd notify socket."""
    addr = _notify_socket()
    if not addr:
        return
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify(%s) failed: %s", msg, e)
    finally:
        sock.close()


def watchdog_interval(default: float = 20) -> float:
    """Half of systemd's WATCHDOG_USEC, or *default* when it is not set."""
    usec = os.environ.get("WATCHDOG_USEC")
    if usec and usec.isdigit() and int(usec) > 0:
        return int(usec) / 2_000_000
    return default


async def watchdog_loop(interval: float | None = None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task()."""
    if interval is None:
        interval = watchdog_interval()
    if not _notify_socket():
        return
    logger.info("Watchdog started (interval=%.1fs)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
