# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Enforcement coordinator: the single consumer of the event queue.

Producers (player watcher, command server, blocklist file watcher, playlist
sync) only put events into one ``asyncio.Queue``.  The coordinator takes them
out in arrival order and is the only code that writes the blocklist or the
skip ledger, so neither needs locking beyond the blocklist's own swap lock.

States:
  IDLE          — no track, track not blocked, or ledger cleared
  SKIP_PENDING  — a skip was issued for the current track (the ledger names it)

A skip is never issued twice for the same occurrence of a track: repeated
notifications about the same still-playing blocked track would otherwise race
through the player's queue.
"""

import asyncio
import logging
from enum import Enum

from .blocklist import Blocklist, BlocklistFile
from .model import (
    NO_SESSION,
    Command,
    PlaybackSnapshot,
    PlaylistBlocklistUpdate,
    ReloadBlocklist,
    SkipResult,
    TrackIdentifier,
)

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    IDLE = "idle"
    SKIP_PENDING = "skip_pending"


class EnforcementCoordinator:
    """Decides when to skip, based on the latest snapshot and the blocklist."""

    def __init__(self, blocklist: Blocklist, dispatcher, source: BlocklistFile | None = None,
                 persist: bool = False):
        self.blocklist = blocklist
        self.dispatcher = dispatcher
        self.source = source
        self.persist = persist
        self.snapshot: PlaybackSnapshot = NO_SESSION
        self.ledger: TrackIdentifier | None = None
        self.skips_issued = 0

    @property
    def state(self) -> CoordinatorState:
        return CoordinatorState.SKIP_PENDING if self.ledger is not None else CoordinatorState.IDLE

    async def run(self, queue: asyncio.Queue):
        """Consume events forever."""
        while True:
            event = await queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error handling %r", event)
            finally:
                queue.task_done()

    async def handle(self, event):
        if isinstance(event, PlaybackSnapshot):
            await self.on_snapshot(event)
        elif isinstance(event, Command):
            await self.on_command(event)
        elif isinstance(event, ReloadBlocklist):
            await self.on_reload(event)
        elif isinstance(event, PlaylistBlocklistUpdate):
            await self.on_playlists(event)
        else:
            logger.warning("Unknown event %r", event)

    # ── Event handlers ──

    async def on_snapshot(self, snapshot: PlaybackSnapshot):
        previous = self.snapshot
        self.snapshot = snapshot
        if snapshot.track != previous.track:
            self._log_track(snapshot)
        if self.ledger is not None and snapshot.track != self.ledger:
            logger.debug("Track changed from %s, clearing skip ledger", self.ledger)
            self.ledger = None
        await self._evaluate(snapshot)

    async def on_command(self, command: Command):
        if command is not Command.BLOCK_CURRENT_SONG:
            logger.warning("Unhandled command %s", command)
            return

        snapshot = self.snapshot
        track = snapshot.track
        if track is None or track.is_unknown:
            logger.warning("Unable to determine current song")
            return

        logger.info("Currently playing: %s", snapshot.info or track)
        if self.blocklist.add(track):
            logger.info("Blocked %s (%d songs blocked)", track, len(self.blocklist))
            if self.persist and self.source is not None:
                try:
                    self.source.append(track, snapshot.info)
                except OSError as e:
                    logger.warning("Unable to add entry to %s: %s", self.source.path, e)
        else:
            logger.info("%s is already blocked", track)
        await self._evaluate(snapshot)

    async def on_reload(self, event: ReloadBlocklist):
        if self.source is None:
            return
        try:
            lines = self.source.read_lines()
        except OSError as e:
            logger.error("Unable to reload blocklist from %s (%s), keeping %d entries",
                         self.source.path, e, len(self.blocklist))
            return
        logger.info("Reloading blocklist: %s", event.reason)
        self.blocklist.reload(lines)
        await self._evaluate(self.snapshot)

    async def on_playlists(self, event: PlaylistBlocklistUpdate):
        logger.info("Updating playlist songs (%s): %s", event.reason,
                    ", ".join(event.playlists) or "no blocking playlists")
        self.blocklist.set_playlist_entries(event.entries)
        await self._evaluate(self.snapshot)

    # ── Decision ──

    async def _evaluate(self, snapshot: PlaybackSnapshot):
        track = snapshot.track
        if track is None or not snapshot.is_playing:
            return
        if not self.blocklist.contains(track):
            return
        if self.ledger == track:
            logger.debug("Skip already issued for %s", track)
            return

        self.ledger = track
        result = await self.dispatcher.skip()
        if result is SkipResult.OK:
            self.skips_issued += 1
            logger.info("Skipped blocked song %s", track)
            return

        # Not retried: the next snapshot re-evaluates if the song is still playing
        logger.warning("Skip for %s failed: %s", track, result.value)
        if self.ledger == track:
            self.ledger = None

    def _log_track(self, snapshot: PlaybackSnapshot):
        if snapshot.track is None:
            logger.info("No song loaded")
            return
        suffix = "[BLOCKED]" if self.blocklist.contains(snapshot.track) else "[NOT BLOCKED]"
        logger.info("%s %s", snapshot.info or snapshot.track, suffix)

    def status(self) -> dict:
        snapshot = self.snapshot
        info = snapshot.info
        return {
            "state": self.state.value,
            "current_track": snapshot.track.value if snapshot.track else None,
            "title": info.title if info else None,
            "artist": info.artist if info else None,
            "playback_status": snapshot.status.value,
            "blocked": self.blocklist.contains(snapshot.track),
            "blocklist_size": len(self.blocklist),
            "playlist_songs": len(self.blocklist.playlist_entries),
            "skips_issued": self.skips_issued,
        }
