# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Value types shared by the watcher, the command server and the coordinator.

Everything that travels through the coordinator's event queue is defined
here: playback snapshots from the player watcher, commands from the local
socket, reload requests from the blocklist file watcher and playlist updates
from the Spotify playlist sync.
"""

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class TrackIdentifier:
    """Canonical blocklist key for a track, e.g. ``https://open.spotify.com/track/ABC``.

    Built by ``identity.resolve``; equality is exact string match.
    """

    value: str

    @property
    def is_unknown(self) -> bool:
        return not self.value

    def __str__(self) -> str:
        return self.value or "<unknown>"


# Sentinel for input the resolver cannot make sense of.  Never matches.
UNKNOWN_TRACK = TrackIdentifier("")


class PlaybackStatus(str, Enum):
    PLAYING = "Playing"
    PAUSED = "Paused"
    STOPPED = "Stopped"

    @classmethod
    def parse(cls, raw) -> "PlaybackStatus":
        """Map an MPRIS PlaybackStatus string; anything unexpected counts as stopped."""
        try:
            return cls(raw)
        except ValueError:
            return cls.STOPPED


@dataclass(frozen=True)
class TrackInfo:
    """Display metadata reported alongside the track URL."""

    url: str = ""
    title: str | None = None
    artists: tuple[str, ...] = ()

    @property
    def artist(self) -> str | None:
        return ", ".join(self.artists) if self.artists else None

    def __str__(self) -> str:
        return "Artist: %s, Title: %s, URL: %s" % (
            self.artist or "Unknown", self.title or "Unknown", self.url)


@dataclass(frozen=True)
class PlaybackSnapshot:
    """Latest known truth about the player: current track and status.

    ``info`` is carried for logging and persistence only and does not take
    part in equality, so two notifications describing the same track and
    status compare equal.
    """

    track: TrackIdentifier | None = None
    status: PlaybackStatus = PlaybackStatus.STOPPED
    info: TrackInfo | None = field(default=None, compare=False)

    @property
    def is_playing(self) -> bool:
        return self.status is PlaybackStatus.PLAYING


# What the watcher reports when the player session goes away.
NO_SESSION = PlaybackSnapshot(None, PlaybackStatus.STOPPED)


class Command(Enum):
    """Commands accepted on the local socket (value = wire token)."""

    BLOCK_CURRENT_SONG = "block_current_song"

    @classmethod
    def from_token(cls, token: str) -> "Command | None":
        for command in cls:
            if command.value == token:
                return command
        return None


@dataclass(frozen=True)
class ReloadBlocklist:
    """The blocklist file changed on disk and should be re-read."""

    reason: str = "file changed"


@dataclass(frozen=True)
class PlaylistBlocklistUpdate:
    """New contents of the blocking playlists (the union of their songs)."""

    entries: frozenset = frozenset()
    playlists: tuple[str, ...] = ()
    reason: str = "playlist sync"


class SkipResult(Enum):
    OK = "ok"
    PLAYER_UNAVAILABLE = "player_unavailable"
    BUS_ERROR = "bus_error"
