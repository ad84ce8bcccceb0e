# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MPRIS player watcher.

Follows one media player session on the D-Bus session bus (by default
``org.mpris.MediaPlayer2.spotify``) and turns its property-change signals
into ``PlaybackSnapshot`` values.

D-Bus surface used:
  NameOwnerChanged(name, old, new)          — session appears / disappears
  GetNameOwner(name)                        — is the session there right now?
  PropertiesChanged(iface, changed, inval)  — Metadata / PlaybackStatus updates
  Properties.GetAll(iface)                  — full state when a session appears

The watcher is a small state machine: AWAITING_SESSION until the player owns
its bus name, ACTIVE while it does.  Losing the session (player quit or
crashed, or the bus connection dropped) yields a synthetic
``{track: None, status: Stopped}`` snapshot and goes back to waiting; it is
never reported as an error to the consumer.

Usage:
    watcher = PlayerWatcher()
    await watcher.start()
    async for snapshot in watcher:
        ...
"""

import asyncio
import logging
from enum import Enum

from dbus_next import BusType, Message, MessageType, Variant
from dbus_next.aio import MessageBus

from ..errors import StartupError, TransientBusError
from ..identity import resolve
from ..lib.config import cfg
from ..model import NO_SESSION, PlaybackSnapshot, PlaybackStatus, TrackInfo

logger = logging.getLogger(__name__)

MPRIS_PREFIX = "org.mpris.MediaPlayer2."
MPRIS_PATH = "/org/mpris/MediaPlayer2"
PLAYER_INTERFACE = "org.mpris.MediaPlayer2.Player"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
NAME_HAS_NO_OWNER = "org.freedesktop.DBus.Error.NameHasNoOwner"

PROPERTY_FETCH_ATTEMPTS = 3


class SessionState(Enum):
    AWAITING_SESSION = "awaiting_session"
    ACTIVE = "active"


def _unwrap(value):
    return value.value if isinstance(value, Variant) else value


def track_info_from_metadata(metadata) -> TrackInfo:
    """Pick url, title and artists out of an MPRIS Metadata dict."""
    if not isinstance(metadata, dict):
        return TrackInfo()
    url = _unwrap(metadata.get("xesam:url"))
    title = _unwrap(metadata.get("xesam:title"))
    artists = _unwrap(metadata.get("xesam:artist"))

    if not isinstance(url, str):
        if url is not None:
            logger.warning("Unable to parse URL from %r", url)
        url = ""
    if title is not None and not isinstance(title, str):
        logger.warning("Unable to parse title from %r", title)
        title = None
    if isinstance(artists, str):
        artists = [artists]
    if isinstance(artists, (list, tuple)) and all(isinstance(a, str) for a in artists):
        artists = tuple(artists)
    else:
        if artists is not None:
            logger.warning("Unable to parse artists from %r", artists)
        artists = ()
    return TrackInfo(url=url, title=title, artists=artists)


async def session_bus() -> MessageBus:
    return await MessageBus(bus_type=BusType.SESSION).connect()


class PlayerWatcher:
    """Lazy, infinite, restartable stream of playback snapshots."""

    def __init__(self, player_name: str | None = None, bus_factory=None,
                 connect_attempts: int | None = None, max_backoff: float | None = None,
                 call_timeout: float | None = None):
        self.player_name = player_name or cfg("player", "name", default="spotify")
        self.bus_name = MPRIS_PREFIX + self.player_name
        self._bus_factory = bus_factory or session_bus
        self.connect_attempts = connect_attempts or cfg("bus", "connect_attempts", default=3)
        self.max_backoff = max_backoff or cfg("bus", "max_backoff", default=30)
        self.call_timeout = call_timeout or cfg("player", "call_timeout", default=5.0)

        self.state = SessionState.AWAITING_SESSION
        self.running = False
        self._bus: MessageBus | None = None
        self._owner: str | None = None
        self._track = None
        self._status = PlaybackStatus.STOPPED
        self._info: TrackInfo | None = None
        self._updates: asyncio.Queue = asyncio.Queue()
        self._last_emitted: PlaybackSnapshot | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None

    # ── Public surface ──

    @property
    def bus(self) -> MessageBus | None:
        """The live bus connection, or None while reconnecting."""
        return self._bus

    @property
    def owner(self) -> str | None:
        """Unique bus name of the current player session."""
        return self._owner

    @property
    def supervisor(self) -> asyncio.Task | None:
        """The reconnect task; None until ``start()`` has succeeded."""
        return self._supervisor_task

    @property
    def current_snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(self._track, self._status, self._info)

    async def start(self):
        """Connect to the session bus and subscribe.

        Raises StartupError when the bus cannot be reached after
        ``connect_attempts`` tries.
        """
        self.running = True
        delay = 1
        for attempt in range(1, self.connect_attempts + 1):
            try:
                await self._connect()
                break
            except Exception as e:
                if attempt == self.connect_attempts:
                    self.running = False
                    raise StartupError(f"Unable to open D-Bus session bus connection: {e}") from e
                logger.warning("D-Bus unreachable (attempt %d/%d, retry in %ds): %s",
                               attempt, self.connect_attempts, delay, e)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_backoff)
        self._supervisor_task = asyncio.create_task(self._supervise(), name="player-supervisor")

    async def stop(self):
        self.running = False
        for task in (self._supervisor_task, self._refresh_task):
            if task:
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._supervisor_task = None
        self._refresh_task = None
        if self._bus:
            self._bus.disconnect()
            self._bus = None
        logger.info("Player watcher stopped")

    async def next_snapshot(self) -> PlaybackSnapshot:
        """Wait for the next snapshot that differs from the last one returned."""
        while True:
            snapshot = await self._updates.get()
            if snapshot == self._last_emitted:
                continue
            self._last_emitted = snapshot
            return snapshot

    def __aiter__(self):
        return self

    async def __anext__(self) -> PlaybackSnapshot:
        return await self.next_snapshot()

    # ── Connection handling ──

    async def _connect(self):
        bus = await self._bus_factory()
        try:
            bus.add_message_handler(self._handle_message)
            await self._add_match(bus, (
                f"type='signal',sender='{DBUS_SERVICE}',interface='{DBUS_SERVICE}',"
                f"member='NameOwnerChanged',arg0='{self.bus_name}'"))
            await self._add_match(bus, (
                f"type='signal',interface='{PROPERTIES_INTERFACE}',member='PropertiesChanged',"
                f"path='{MPRIS_PATH}',arg0='{PLAYER_INTERFACE}'"))
            owner = await self._get_name_owner(bus)
        except Exception:
            bus.disconnect()
            raise

        self._bus = bus
        logger.info("Connected to D-Bus session bus as %s", bus.unique_name)
        if owner:
            self._session_appeared(owner)
        else:
            logger.info("Waiting for %s to appear on the bus", self.bus_name)

    async def _add_match(self, bus, rule: str):
        reply = await bus.call(Message(
            destination=DBUS_SERVICE, path=DBUS_PATH, interface=DBUS_SERVICE,
            member="AddMatch", signature="s", body=[rule]))
        if reply.message_type == MessageType.ERROR:
            raise TransientBusError(f"AddMatch failed: {reply.error_name}")

    async def _get_name_owner(self, bus) -> str | None:
        reply = await bus.call(Message(
            destination=DBUS_SERVICE, path=DBUS_PATH, interface=DBUS_SERVICE,
            member="GetNameOwner", signature="s", body=[self.bus_name]))
        if reply.message_type == MessageType.ERROR:
            if reply.error_name == NAME_HAS_NO_OWNER:
                return None
            raise TransientBusError(f"GetNameOwner failed: {reply.error_name}")
        return reply.body[0]

    async def _supervise(self):
        """Reconnect with capped exponential backoff whenever the bus drops."""
        while self.running:
            try:
                await self._bus.wait_for_disconnect()
                logger.warning("D-Bus connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("D-Bus connection lost: %s", e)
            if not self.running:
                break
            self._bus = None
            self._session_vanished()

            backoff = 1
            while self.running:
                try:
                    await self._connect()
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("D-Bus reconnect failed (%s), retrying in %ds", e, backoff)
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, self.max_backoff)

    # ── Signal handling ──

    def _handle_message(self, msg: Message):
        if msg.message_type != MessageType.SIGNAL:
            return None
        if msg.interface == DBUS_SERVICE and msg.member == "NameOwnerChanged":
            self._on_name_owner_changed(*msg.body)
        elif (msg.interface == PROPERTIES_INTERFACE and msg.member == "PropertiesChanged"
              and msg.path == MPRIS_PATH):
            interface, changed, _invalidated = msg.body
            if interface != PLAYER_INTERFACE:
                return None
            if self._owner is None or msg.sender != self._owner:
                logger.debug("Ignoring PropertiesChanged from %s", msg.sender)
                return None
            self._apply_properties(changed)
        return None

    def _on_name_owner_changed(self, name: str, old_owner: str, new_owner: str):
        if name != self.bus_name:
            return
        if old_owner and self._owner is not None:
            self._session_vanished()
        if new_owner:
            self._session_appeared(new_owner)

    def _session_appeared(self, owner: str):
        self._owner = owner
        self.state = SessionState.ACTIVE
        logger.info("Player session %s appeared (%s)", self.bus_name, owner)
        if self._refresh_task:
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self._refresh(owner))

    def _session_vanished(self):
        if self.state is SessionState.ACTIVE:
            logger.info("Player session %s disappeared", self.bus_name)
        if self._refresh_task:
            self._refresh_task.cancel()
            self._refresh_task = None
        self._owner = None
        self.state = SessionState.AWAITING_SESSION
        self._track = NO_SESSION.track
        self._status = NO_SESSION.status
        self._info = None
        self._publish()

    async def _refresh(self, owner: str):
        """Fetch all player properties of a newly appeared session."""
        delay = 0.5
        for attempt in range(1, PROPERTY_FETCH_ATTEMPTS + 1):
            try:
                properties = await self._get_all(owner)
            except TransientBusError as e:
                logger.warning("Fetching player properties failed (attempt %d/%d): %s",
                               attempt, PROPERTY_FETCH_ATTEMPTS, e)
                await asyncio.sleep(delay)
                delay *= 2
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error fetching properties of %s; waiting for signals",
                                 self.bus_name)
                return
            if self._owner == owner:
                try:
                    self._apply_properties(properties)
                except Exception:
                    logger.exception("Unusable properties from %s: %r", self.bus_name, properties)
            return
        logger.warning("Giving up fetching properties of %s; waiting for signals", self.bus_name)

    async def _get_all(self, owner: str) -> dict:
        bus = self._bus
        if bus is None:
            raise TransientBusError("not connected")
        try:
            reply = await asyncio.wait_for(bus.call(Message(
                destination=owner, path=MPRIS_PATH, interface=PROPERTIES_INTERFACE,
                member="GetAll", signature="s", body=[PLAYER_INTERFACE])),
                timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise TransientBusError("GetAll timed out") from e
        except (OSError, EOFError) as e:
            raise TransientBusError(str(e)) from e
        if reply.message_type == MessageType.ERROR:
            raise TransientBusError(f"GetAll failed: {reply.error_name}")
        return reply.body[0]

    def _apply_properties(self, properties: dict):
        if "Metadata" in properties:
            info = track_info_from_metadata(_unwrap(properties["Metadata"]))
            self._info = info
            self._track = resolve(info.url) if info.url else None
        if "PlaybackStatus" in properties:
            self._status = PlaybackStatus.parse(_unwrap(properties["PlaybackStatus"]))
        self._publish()

    def _publish(self):
        self._updates.put_nowait(self.current_snapshot)
