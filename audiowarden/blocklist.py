# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Blocklist store and its backing file.

The blocklist file is plain UTF-8 text, one entry per line:

    # comment lines and blank lines are ignored
    https://open.spotify.com/track/6CE6xXEI29e6X0noaNugIW?si=7764fc

``Blocklist`` holds the parsed set, together with the songs found in
blocking playlists.  Contents are an immutable frozenset that is swapped as a
whole under one lock, so readers see either the old or the new set, never a
half-applied reload.

``BlocklistWatcher`` watches the file and asks the coordinator to reload it;
it never touches the set itself.
"""

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Iterable

from .errors import BlocklistParseWarning
from .identity import resolve
from .lib.config import cfg, config_dir
from .model import ReloadBlocklist, TrackIdentifier, TrackInfo

logger = logging.getLogger(__name__)

BLOCKLIST_FILENAME = "blocked_songs.conf"
COMMENT_PREFIX = "#"
DEFAULT_POLL_INTERVAL = 2.0

INITIAL_CONTENT = """\
# Enter all songs that you don't want to listen to anymore here.
# Make sure to enter valid Spotify URLs only: you can get them from the Spotify
# app via the 'Share' functionality. For example, in the desktop version of
# Spotify, right-click a song, click 'Share', and then 'Copy Song Link'.
# You can also select multiple songs and copy them with Ctrl + C to get
# multiple URLs in your clipboard.

# The following line is included for testing and demonstration purposes: feel
# free to remove it (and everything else in this file) and replace it with
# your own song URLs.
https://open.spotify.com/track/6CE6xXEI29e6X0noaNugIW
"""


def parse_lines(lines: Iterable[str]) -> tuple[set[TrackIdentifier], list[BlocklistParseWarning]]:
    """Extract identifiers from blocklist lines; bad lines become warnings."""
    entries: set[TrackIdentifier] = set()
    problems: list[BlocklistParseWarning] = []
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith(COMMENT_PREFIX):
            continue
        track = resolve(line)
        if track.is_unknown:
            problems.append(BlocklistParseWarning(line_number, line))
            continue
        entries.add(track)
    return entries, problems


def _parse_and_report(lines: Iterable[str]) -> frozenset[TrackIdentifier]:
    entries, problems = parse_lines(lines)
    for problem in problems:
        logger.error("%s", problem)
    return frozenset(entries)


class Blocklist:
    """Set of blocked track identifiers.

    Two sources feed it: the blocklist file (plus songs blocked at runtime)
    and the Spotify playlists marked for blocking.  Each is replaced on its
    own; lookups go against their union.
    """

    def __init__(self, entries: Iterable[TrackIdentifier] = (),
                 playlist_entries: Iterable[TrackIdentifier] = ()):
        self._lock = threading.Lock()
        self._file_entries: frozenset[TrackIdentifier] = frozenset(
            e for e in entries if not e.is_unknown)
        self._playlist_entries: frozenset[TrackIdentifier] = frozenset(
            e for e in playlist_entries if not e.is_unknown)
        self._entries = self._file_entries | self._playlist_entries

    def __contains__(self, track) -> bool:
        return self.contains(track)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def contains(self, track: TrackIdentifier | None) -> bool:
        if track is None or track.is_unknown:
            return False
        return track in self._entries

    def snapshot(self) -> frozenset[TrackIdentifier]:
        """The current complete set."""
        return self._entries

    @property
    def playlist_entries(self) -> frozenset[TrackIdentifier]:
        return self._playlist_entries

    def add(self, track: TrackIdentifier) -> bool:
        """Insert one identifier.  Returns False if it was already there or unusable."""
        if track.is_unknown:
            return False
        with self._lock:
            if track in self._entries:
                return False
            self._file_entries = self._file_entries | {track}
            self._entries = self._entries | {track}
        return True

    def reload(self, lines: Iterable[str]) -> "Blocklist":
        """Re-parse *lines* and replace the file part at once."""
        entries = _parse_and_report(lines)
        with self._lock:
            old_size = len(self._entries)
            self._file_entries = entries
            self._entries = entries | self._playlist_entries
            new_size = len(self._entries)
        logger.info("Blocklist reloaded: %d songs blocked (was %d)", new_size, old_size)
        return self

    def set_playlist_entries(self, entries: Iterable[TrackIdentifier]) -> "Blocklist":
        """Replace the songs contributed by blocking playlists."""
        entries = frozenset(e for e in entries if not e.is_unknown)
        with self._lock:
            old_size = len(self._entries)
            self._playlist_entries = entries
            self._entries = self._file_entries | entries
            new_size = len(self._entries)
        logger.info("Playlist songs updated: %d from playlists, %d songs blocked (was %d)",
                    len(entries), new_size, old_size)
        return self


def load_blocklist(lines: Iterable[str]) -> Blocklist:
    """Build a blocklist from *lines*, skipping (and logging) malformed ones."""
    return Blocklist(_parse_and_report(lines))


class BlocklistFile:
    """The on-disk blocklist source."""

    def __init__(self, path: str | os.PathLike | None = None):
        configured = path or cfg("blocklist", "path")
        self.path = Path(configured).expanduser() if configured else config_dir() / BLOCKLIST_FILENAME

    def ensure_exists(self) -> bool:
        """Create the file with an explanatory template on first run.

        Returns True if the file was created.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "x", encoding="utf-8") as f:
                f.write(INITIAL_CONTENT)
        except FileExistsError:
            logger.debug("File %s already exists", self.path)
            return False
        except OSError as e:
            logger.warning("Error creating file at path %s: %s", self.path, e)
            return False
        logger.info("Created blocklist file %s", self.path)
        return True

    def read_lines(self) -> list[str]:
        """Read all lines.  Raises OSError if the file cannot be read."""
        with open(self.path, encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()

    def load(self) -> Blocklist:
        return load_blocklist(self.read_lines())

    def append(self, track: TrackIdentifier, info: TrackInfo | None = None) -> None:
        """Append an entry, preceded by an artist/title comment when known."""
        attributes = []
        if info and info.artist:
            attributes.append(f"Artist: {info.artist}")
        if info and info.title:
            attributes.append(f"Title: {info.title}")
        entry = "\n"
        if attributes:
            entry += f"{COMMENT_PREFIX} {', '.join(attributes)}\n"
        entry += f"{track.value}\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry)
        logger.info("Added %s to %s", track, self.path)

    def stat_signature(self) -> tuple[int, int] | None:
        """(mtime_ns, size) of the file, or None if it is missing."""
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size


class BlocklistWatcher:
    """Polls the blocklist file and queues a reload when it changes."""

    def __init__(self, source: BlocklistFile, queue: asyncio.Queue,
                 interval: float | None = None):
        self.source = source
        self.queue = queue
        if interval is None:
            interval = cfg("blocklist", "poll_interval", default=DEFAULT_POLL_INTERVAL)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            logger.warning("Invalid blocklist poll interval %r, using %.1fs",
                           interval, DEFAULT_POLL_INTERVAL)
            interval = DEFAULT_POLL_INTERVAL
        self.interval = interval
        self._signature = source.stat_signature()

    def check(self) -> bool:
        """True if the file changed since the last check."""
        signature = self.source.stat_signature()
        if signature == self._signature:
            return False
        self._signature = signature
        return True

    async def run(self):
        logger.info("Watching %s for changes (every %.1fs)", self.source.path, self.interval)
        while True:
            await asyncio.sleep(self.interval)
            if self.check():
                logger.debug("Blocklist file %s changed", self.source.path)
                await self.queue.put(ReloadBlocklist())
