"""Systemd notify protocol for the audiowarden service.

Sends READY=1 once startup is done, WATCHDOG=1 at regular intervals and
STOPPING=1 on shutdown.  Silently no-ops when NOTIFY_SOCKET is unset
(started from a terminal).

Usage:
    from audiowarden.lib.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop())
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def _watchdog_interval(default: float) -> float:
    """Half of WATCHDOG_USEC when systemd set one, else *default* seconds."""
    usec = os.environ.get("WATCHDOG_USEC")
    if usec and usec.isdigit() and int(usec) > 0:
        return int(usec) / 2_000_000
    return default


def sd_notify(msg: str) -> None:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify(%s) failed: %s", msg.split("\n")[0], e)
    finally:
        sock.close()


async def watchdog_loop(interval: float = 20):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    Also sends READY=1 on first invocation so systemd knows the service
    has finished startup (requires Type=notify in the unit file).
    """
    interval = _watchdog_interval(interval)
    sd_notify("READY=1")
    logger.debug("Watchdog started (interval=%.1fs)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
