# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Spotify playlists as a blocklist source.

Every track of a playlist whose description contains
``audiowarden:block_songs`` is blocked.  Pieces:

  pkce.py    PKCE helpers (verifier, challenge, auth URL, token requests)
  tokens.py  atomic storage of the refresh token
  auth.py    access-token cache with refresh and revocation detection
  login.py   local callback server for the one-time browser login
  client.py  Web API reads (playlists, playlist tracks)
  cache.py   gzipped JSON cache of playlist contents
  sync.py    periodic sync feeding the coordinator queue
"""

from .auth import SpotifyAuth
from .login import LoginServer
from .sync import BLOCK_SONGS_KEYWORD, PlaylistSync

__all__ = ["BLOCK_SONGS_KEYWORD", "LoginServer", "PlaylistSync", "SpotifyAuth"]
