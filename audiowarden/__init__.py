"""
audiowarden: skip the songs you never want to hear again.

A per-user background service that watches an MPRIS media player on the
D-Bus session bus and skips every track listed in blocked_songs.conf or in a blocking
Spotify playlist.

  service.py         — entry point, wiring, signals, status endpoint
  coordinator.py     — decides when to skip (single event consumer)
  blocklist.py       — blocked track set, its file, the file watcher
  identity.py        — URL -> track identifier
  command_server.py  — local Unix socket (block_current_song)
  players/           — MPRIS watcher and skip dispatcher
  sources/spotify/    — blocking Spotify playlists (login, sync, cache)
"""

__version__ = "0.1.0"
