# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Gzipped JSON cache of blocking-playlist contents.

Layout inside the cache directory ($CACHE_DIRECTORY, else
$XDG_CACHE_HOME/audiowarden, else ~/.cache/audiowarden):

    blocked_songs.json.gz                       union of the last sync
    playlists/<playlist id>/<snapshot>.json.gz  one playlist at one snapshot

Both hold ``{"version": 1, "blocked_songs": [{"spotify_url", "playlist_name"}]}``.
A playlist whose snapshot_id did not change is not fetched again.  The union
file lets playlist songs be blocked right after a restart, before the first
sync finishes.
"""

import gzip
import json
import logging
import os
import tempfile
import urllib.parse
from dataclasses import dataclass
from pathlib import Path

from ...lib.config import cache_dir

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
BLOCKED_SONGS_FILENAME = "blocked_songs.json.gz"
PLAYLISTS_DIRNAME = "playlists"


@dataclass(frozen=True)
class BlockedSong:
    url: str
    playlist: str


def blocked_songs_path() -> Path:
    return cache_dir() / BLOCKED_SONGS_FILENAME


def playlist_path(playlist_id: str, snapshot_id: str) -> Path:
    # snapshot ids are base64 and may contain '/'
    return (cache_dir() / PLAYLISTS_DIRNAME / urllib.parse.quote(playlist_id, safe="")
            / f"{urllib.parse.quote(snapshot_id, safe='')}.json.gz")


def _encode(songs) -> dict:
    return {
        "version": CACHE_VERSION,
        "blocked_songs": [{"spotify_url": s.url, "playlist_name": s.playlist} for s in songs],
    }


def _decode(data) -> list[BlockedSong]:
    if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
        raise ValueError("unknown cache format")
    songs = []
    for entry in data.get("blocked_songs") or []:
        if isinstance(entry, dict) and isinstance(entry.get("spotify_url"), str):
            songs.append(BlockedSong(entry["spotify_url"], str(entry.get("playlist_name", ""))))
    return songs


def _read(path: Path) -> list[BlockedSong]:
    with gzip.open(path, "rt", encoding="utf-8") as f:
        return _decode(json.load(f))


def _write(path: Path, songs) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as raw, gzip.open(raw, "wt", encoding="utf-8") as f:
            json.dump(_encode(songs), f)
        os.replace(tmp, path)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_blocked_songs() -> list[BlockedSong]:
    """Songs of the last successful sync; empty if there is none."""
    path = blocked_songs_path()
    try:
        return _read(path)
    except FileNotFoundError:
        return []
    except (OSError, EOFError, ValueError) as e:
        logger.warning("Ignoring unreadable cache %s: %s", path, e)
        return []


def store_blocked_songs(songs) -> None:
    _write(blocked_songs_path(), songs)


def load_playlist_songs(playlist_id: str, snapshot_id: str) -> list[BlockedSong] | None:
    """Cached songs of one playlist snapshot, or None if not cached."""
    path = playlist_path(playlist_id, snapshot_id)
    try:
        return _read(path)
    except FileNotFoundError:
        return None
    except (OSError, EOFError, ValueError) as e:
        logger.warning("Ignoring unreadable cache %s: %s", path, e)
        return None


def store_playlist_songs(playlist_id: str, snapshot_id: str, songs) -> None:
    """Cache one playlist snapshot and drop its older snapshots."""
    path = playlist_path(playlist_id, snapshot_id)
    _write(path, songs)
    for old in path.parent.glob("*.json.gz"):
        if old != path:
            try:
                old.unlink()
            except OSError as e:
                logger.debug("Could not remove %s: %s", old, e)
