# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Spotify access tokens for the playlist sync.

``SpotifyAuth`` keeps the current access token in memory and refreshes it
through the PKCE token endpoint when it expires or when the Web API answers
401.  A rotated refresh token is written back to the token store.  A 400
``invalid_grant`` answer means the login was revoked: the user has to log in
again.
"""

import asyncio
import json
import logging
import time
import urllib.error

from ...errors import SpotifyAuthError, SpotifyError
from .pkce import TOKEN_URL, refresh_access_token
from .tokens import load_tokens, save_tokens

logger = logging.getLogger(__name__)

# Refresh this many seconds before Spotify's expiry
EXPIRY_MARGIN = 300


class SpotifyAuth:
    """Access-token cache with automatic refresh."""

    def __init__(self, token_url: str = TOKEN_URL):
        self.token_url = token_url
        self._access_token = None
        self._token_expiry = 0
        self._client_id = None
        self._refresh_token = None
        self._lock = asyncio.Lock()
        self.revoked = False

    def load(self) -> bool:
        """Load credentials from the token store.  Returns True if usable."""
        tokens = load_tokens()
        if tokens and tokens.get("client_id") and tokens.get("refresh_token"):
            self._client_id = tokens["client_id"]
            self._refresh_token = tokens["refresh_token"]
            self.revoked = False
            logger.info("Spotify login loaded (client_id: %s...)", self._client_id[:8])
            return True
        if tokens is not None:
            logger.info("Spotify token file is incomplete, login required")
        else:
            logger.info("No Spotify login yet")
        return False

    def set_credentials(self, client_id, refresh_token, access_token=None, expires_in=3600):
        """Set credentials directly (after the login callback)."""
        self._client_id = client_id
        self._refresh_token = refresh_token
        self._access_token = access_token
        self._token_expiry = time.monotonic() + expires_in - EXPIRY_MARGIN if access_token else 0
        self.revoked = False

    def invalidate(self):
        """Drop the cached access token; the next ``get_token()`` refreshes."""
        self._access_token = None
        self._token_expiry = 0

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._refresh_token)

    async def get_token(self) -> str:
        """A valid access token, refreshed if needed.

        Raises SpotifyAuthError without a usable login, SpotifyError when the
        token endpoint cannot be reached.
        """
        async with self._lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token
            return await self._refresh()

    async def _refresh(self) -> str:
        if not self.is_configured:
            raise SpotifyAuthError("Not logged in to Spotify")
        if self.revoked:
            raise SpotifyAuthError("Spotify login was revoked, log in again")

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, refresh_access_token, self._client_id, self._refresh_token, self.token_url)
        except urllib.error.HTTPError as e:
            if e.code == 400:
                self._mark_revoked(e)
                if self.revoked:
                    raise SpotifyAuthError("Spotify login was revoked, log in again") from e
            raise SpotifyError(f"Token refresh failed: HTTP {e.code}", status=e.code) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise SpotifyError(f"Token refresh failed: {e}") from e

        if not isinstance(result, dict) or not result.get("access_token"):
            raise SpotifyError("Token refresh returned no access token")
        self._access_token = result["access_token"]
        self._token_expiry = time.monotonic() + result.get("expires_in", 3600) - EXPIRY_MARGIN

        new_rt = result.get("refresh_token")
        if new_rt and new_rt != self._refresh_token:
            self._refresh_token = new_rt
            try:
                await loop.run_in_executor(None, save_tokens, self._client_id, new_rt)
                logger.info("Spotify refresh token rotated")
            except OSError as e:
                logger.error("Unable to store Spotify token after refresh: %s", e)

        logger.info("Spotify access token refreshed (expires in %ds)", result.get("expires_in", 0))
        return self._access_token

    def _mark_revoked(self, exc):
        """Flag that the refresh token has been revoked by Spotify."""
        try:
            body = json.loads(exc.read().decode())
            error = body.get("error", "")
        except (OSError, ValueError, AttributeError):
            error = ""
        if error == "invalid_grant":
            self.revoked = True
            logger.error("Spotify refresh token revoked, log in again")
        else:
            logger.warning("Spotify token refresh failed (400): %s", error)
