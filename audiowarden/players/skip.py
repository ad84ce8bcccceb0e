"""
Skip dispatcher: one MPRIS ``Next`` call with a bounded timeout.

Failures come back as ``SkipResult`` values rather than exceptions; the
coordinator decides what to do with them (nothing is retried here, the next
playback notification re-evaluates on its own).
"""

import asyncio
import logging

from dbus_next import Message, MessageType

from ..lib.config import cfg
from ..model import SkipResult
from .mpris import MPRIS_PATH, PLAYER_INTERFACE

logger = logging.getLogger(__name__)

# Error replies meaning the player session went away between decision and dispatch
SESSION_GONE_ERRORS = {
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.freedesktop.DBus.Error.NameHasNoOwner",
    "org.freedesktop.DBus.Error.UnknownObject",
}


class SkipDispatcher:
    """Advance the watched player to its next track."""

    def __init__(self, watcher, timeout: float | None = None, dry_run: bool = False):
        self.watcher = watcher
        self.timeout = timeout or cfg("player", "call_timeout", default=5.0)
        self.dry_run = dry_run

    async def skip(self) -> SkipResult:
        if self.dry_run:
            logger.info("Dry run: would skip to next track on %s", self.watcher.bus_name)
            return SkipResult.OK

        bus = self.watcher.bus
        if bus is None:
            logger.warning("Cannot skip: not connected to D-Bus")
            return SkipResult.BUS_ERROR
        if self.watcher.owner is None:
            logger.info("Cannot skip: %s is gone", self.watcher.bus_name)
            return SkipResult.PLAYER_UNAVAILABLE

        message = Message(destination=self.watcher.bus_name, path=MPRIS_PATH,
                          interface=PLAYER_INTERFACE, member="Next")
        try:
            reply = await asyncio.wait_for(bus.call(message), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Next call to %s timed out after %.1fs", self.watcher.bus_name, self.timeout)
            return SkipResult.BUS_ERROR
        except Exception as e:
            logger.warning("Next call to %s failed: %s", self.watcher.bus_name, e)
            return SkipResult.BUS_ERROR

        if reply is not None and reply.message_type == MessageType.ERROR:
            if reply.error_name in SESSION_GONE_ERRORS:
                logger.info("Cannot skip: %s disappeared (%s)", self.watcher.bus_name, reply.error_name)
                return SkipResult.PLAYER_UNAVAILABLE
            logger.warning("Next call to %s returned %s: %s", self.watcher.bus_name,
                           reply.error_name, reply.body[0] if reply.body else "")
            return SkipResult.BUS_ERROR

        logger.debug("Next call to %s succeeded", self.watcher.bus_name)
        return SkipResult.OK
