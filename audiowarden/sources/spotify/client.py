# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Spotify Web API reads used by the playlist sync.

  GET /me/playlists                  the user's playlists (paged, 50 per page)
  GET /playlists/{id}/tracks         a playlist's items (paged, 100 per page)

Paging follows the ``next`` URL of each page.  A 401 answer refreshes the
access token and retries once; a 429 answer waits for ``Retry-After``.
"""

import asyncio
import logging

import aiohttp

from ...errors import SpotifyError

logger = logging.getLogger(__name__)

API_BASE = "https://api.spotify.com/v1"
PLAYLISTS_PER_PAGE = 50
TRACKS_PER_PAGE = 100
TRACK_FIELDS = "next,items(is_local,track(type,is_local,uri,external_urls))"
RATE_LIMIT_RETRIES = 5
MAX_RETRY_AFTER = 60


def track_url(item) -> str | None:
    """Open URL of a playlist item, or None for episodes, local files and gaps."""
    if not isinstance(item, dict):
        return None
    track = item.get("track")
    if not isinstance(track, dict):
        return None
    # Podcast episodes are not songs
    if track.get("type", "track") != "track":
        return None
    # Local files have no open.spotify.com URL
    if item.get("is_local") or track.get("is_local"):
        return None
    url = (track.get("external_urls") or {}).get("spotify")
    return url if isinstance(url, str) and url else None


class SpotifyClient:
    """Authenticated GETs against the Web API over one aiohttp session."""

    def __init__(self, auth, session: aiohttp.ClientSession, api_base: str = API_BASE):
        self.auth = auth
        self.session = session
        self.api_base = api_base.rstrip("/")

    async def get_json(self, url: str, params: dict | None = None) -> dict:
        refreshed = False
        rate_limited = 0
        while True:
            token = await self.auth.get_token()
            try:
                async with self.session.get(
                        url, params=params,
                        headers={"Authorization": f"Bearer {token}"}) as resp:
                    if resp.status == 401 and not refreshed:
                        logger.info("Spotify returned 401, token refresh may be required")
                        self.auth.invalidate()
                        refreshed = True
                        continue
                    if resp.status == 429 and rate_limited < RATE_LIMIT_RETRIES:
                        rate_limited += 1
                        delay = _retry_after(resp.headers.get("Retry-After"))
                        logger.warning("Spotify rate limit hit, retrying in %ds", delay)
                        await asyncio.sleep(delay)
                        continue
                    if resp.status != 200:
                        raise SpotifyError(f"GET {url} returned HTTP {resp.status}",
                                           status=resp.status)
                    data = await resp.json()
            except aiohttp.ClientError as e:
                raise SpotifyError(f"GET {url} failed: {e}") from e
            except asyncio.TimeoutError as e:
                raise SpotifyError(f"GET {url} timed out") from e
            except ValueError as e:
                raise SpotifyError(f"GET {url} returned invalid JSON: {e}") from e
            if not isinstance(data, dict):
                raise SpotifyError(f"GET {url} returned {type(data).__name__}, expected an object")
            return data

    async def _paged_items(self, url: str, params: dict | None = None):
        while url:
            page = await self.get_json(url, params)
            for item in page.get("items") or []:
                yield item
            url = page.get("next")
            # ``next`` already carries the query
            params = None

    async def fetch_user_playlists(self) -> list[dict]:
        """All playlists of the logged-in user."""
        playlists = []
        async for pl in self._paged_items(f"{self.api_base}/me/playlists",
                                          {"limit": str(PLAYLISTS_PER_PAGE)}):
            if not isinstance(pl, dict) or not pl.get("id"):
                continue
            playlists.append({
                "id": pl["id"],
                "name": pl.get("name") or pl["id"],
                "uri": pl.get("uri", ""),
                "description": pl.get("description") or "",
                "snapshot_id": pl.get("snapshot_id") or "",
            })
        return playlists

    async def fetch_playlist_tracks(self, playlist_id: str) -> list[str]:
        """Open URLs of all songs of one playlist."""
        urls = []
        params = {"limit": str(TRACKS_PER_PAGE), "fields": TRACK_FIELDS}
        async for item in self._paged_items(f"{self.api_base}/playlists/{playlist_id}/tracks",
                                            params):
            url = track_url(item)
            if url:
                urls.append(url)
        return urls


def _retry_after(value) -> int:
    try:
        delay = int(value)
    except (TypeError, ValueError):
        delay = 2
    return max(0, min(delay, MAX_RETRY_AFTER))
