# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Periodic sync of the blocking playlists.

Every ``spotify.sync_interval`` seconds (and right after a login) the sync
lists the user's playlists, keeps those whose description contains
``audiowarden:block_songs``, collects their songs and puts one
``PlaylistBlocklistUpdate`` with the union into the coordinator queue.  Like
the blocklist file watcher it never touches the blocklist itself.
"""

import asyncio
import logging
from datetime import datetime

import aiohttp

from ...errors import SpotifyAuthError, SpotifyError
from ...identity import resolve
from ...lib.config import cfg
from ...model import PlaylistBlocklistUpdate
from .cache import (
    BlockedSong,
    load_blocked_songs,
    load_playlist_songs,
    store_blocked_songs,
    store_playlist_songs,
)
from .client import API_BASE, SpotifyClient

logger = logging.getLogger(__name__)

BLOCK_SONGS_KEYWORD = "audiowarden:block_songs"
DEFAULT_SYNC_INTERVAL = 3600
REQUEST_TIMEOUT = 10


def is_blocking_playlist(playlist: dict) -> bool:
    return BLOCK_SONGS_KEYWORD in (playlist.get("description") or "")


def make_update(songs, reason: str) -> PlaylistBlocklistUpdate:
    entries = frozenset(t for t in (resolve(s.url) for s in songs) if not t.is_unknown)
    playlists = tuple(dict.fromkeys(s.playlist for s in songs))
    return PlaylistBlocklistUpdate(entries=entries, playlists=playlists, reason=reason)


class PlaylistSync:
    """Keeps the coordinator informed about the songs of blocking playlists."""

    def __init__(self, auth, queue: asyncio.Queue, interval: float | None = None,
                 api_base: str = API_BASE):
        self.auth = auth
        self.queue = queue
        self.api_base = api_base
        if interval is None:
            interval = cfg("spotify", "sync_interval", default=DEFAULT_SYNC_INTERVAL)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            logger.warning("Invalid Spotify sync interval %r, using %ds",
                           interval, DEFAULT_SYNC_INTERVAL)
            interval = DEFAULT_SYNC_INTERVAL
        self.interval = interval
        self.playlists: tuple[str, ...] = ()
        self.song_count = 0
        self.last_sync: datetime | None = None
        self.last_error: str | None = None
        self._wake = asyncio.Event()

    def trigger(self):
        """Sync now instead of waiting for the interval."""
        self._wake.set()

    async def publish_cached(self) -> bool:
        """Queue the songs of the last sync.  Returns False if there were none."""
        songs = load_blocked_songs()
        if not songs:
            return False
        logger.info("%d songs from blocking playlists loaded from cache", len(songs))
        await self.queue.put(make_update(songs, "cache"))
        return True

    async def sync_once(self) -> list[BlockedSong]:
        """Fetch the blocking playlists and queue their songs.

        Raises SpotifyError (or SpotifyAuthError) when the playlist list
        cannot be fetched; a single playlist that fails is logged and left out.
        """
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            client = SpotifyClient(self.auth, session, self.api_base)
            playlists = [p for p in await client.fetch_user_playlists() if is_blocking_playlist(p)]
            logger.info("Found %d blocking playlists", len(playlists))

            songs: list[BlockedSong] = []
            for pl in playlists:
                cached = None
                if pl["snapshot_id"]:
                    cached = load_playlist_songs(pl["id"], pl["snapshot_id"])
                if cached is not None:
                    logger.info("  %s (unchanged, %d songs)", pl["name"], len(cached))
                    songs.extend(cached)
                    continue
                try:
                    urls = await client.fetch_playlist_tracks(pl["id"])
                except SpotifyAuthError:
                    raise
                except SpotifyError as e:
                    logger.error("Cannot determine playlist tracks for %s: %s", pl["name"], e)
                    continue
                fetched = [BlockedSong(url, pl["name"]) for url in urls]
                logger.info("  %s: %d songs", pl["name"], len(fetched))
                if pl["snapshot_id"]:
                    try:
                        store_playlist_songs(pl["id"], pl["snapshot_id"], fetched)
                    except OSError as e:
                        logger.warning("Unable to cache playlist %s: %s", pl["name"], e)
                songs.extend(fetched)

        try:
            store_blocked_songs(songs)
        except OSError as e:
            logger.warning("Unable to cache blocked songs: %s", e)

        update = make_update(songs, "playlist sync")
        self.playlists = tuple(pl["name"] for pl in playlists)
        self.song_count = len(update.entries)
        self.last_sync = datetime.now()
        self.last_error = None
        await self.queue.put(update)
        return songs

    async def run(self):
        await self.publish_cached()
        while True:
            self._wake.clear()
            if self.auth.is_configured and not self.auth.revoked:
                try:
                    await self.sync_once()
                except asyncio.CancelledError:
                    raise
                except SpotifyError as e:
                    self.last_error = str(e)
                    logger.error("Playlist sync failed: %s", e)
                except Exception as e:
                    self.last_error = str(e)
                    logger.exception("Playlist sync failed")
            else:
                logger.debug("Not logged in to Spotify, playlist sync waits")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def status(self) -> dict:
        return {
            "logged_in": self.auth.is_configured and not self.auth.revoked,
            "playlists": list(self.playlists),
            "songs": self.song_count,
            "last_sync": self.last_sync.isoformat(timespec="seconds") if self.last_sync else None,
            "last_error": self.last_error,
        }
