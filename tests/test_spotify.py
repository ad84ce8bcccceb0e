"""Tests for the Spotify playlist source: login, tokens, Web API reads, cache and sync.

The Spotify token endpoint and Web API are stood in for by local aiohttp
servers.
"""

import asyncio
import base64
import contextlib
import gzip
import hashlib
import io
import json
import os
import urllib.error
import urllib.parse

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from audiowarden.errors import SpotifyAuthError, SpotifyError
from audiowarden.model import PlaylistBlocklistUpdate
from audiowarden.sources.spotify import auth as auth_module
from audiowarden.sources.spotify.auth import SpotifyAuth
from audiowarden.sources.spotify.cache import (
    BlockedSong,
    blocked_songs_path,
    load_blocked_songs,
    load_playlist_songs,
    playlist_path,
    store_blocked_songs,
    store_playlist_songs,
)
from audiowarden.sources.spotify.client import SpotifyClient, track_url
from audiowarden.sources.spotify.login import DEFAULT_CLIENT_ID, LoginServer
from audiowarden.sources.spotify.pkce import (
    build_auth_url,
    exchange_code,
    generate_code_challenge,
    generate_code_verifier,
)
from audiowarden.sources.spotify.sync import (
    BLOCK_SONGS_KEYWORD,
    DEFAULT_SYNC_INTERVAL,
    PlaylistSync,
    is_blocking_playlist,
)
from audiowarden.sources.spotify.tokens import (
    delete_tokens,
    load_tokens,
    save_tokens,
    token_path,
)

from conftest import URL_X, URL_Y, URL_Z, X, Y, Z


@contextlib.asynccontextmanager
async def serving(app):
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


async def wait_until(predicate, timeout=2):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)


def song(url, is_local=False):
    return {"is_local": is_local,
            "track": {"type": "track", "is_local": is_local, "uri": "spotify:track:x",
                      "external_urls": {"spotify": url} if not is_local else {}}}


def episode(url="https://open.spotify.com/episode/512ojhOuo1ktJprKbVcKyQ"):
    return {"is_local": False,
            "track": {"type": "episode", "external_urls": {"spotify": url}}}


def playlist(pid, name, description="", snapshot="snap-1"):
    return {"id": pid, "name": name, "uri": f"spotify:playlist:{pid}",
            "description": description, "snapshot_id": snapshot}


class FakeSpotify:
    """Web API stand-in: /v1/me/playlists and /v1/playlists/{id}/tracks."""

    PAGE_SIZE = 2

    def __init__(self, playlists=(), tracks=None, token="token-1"):
        self.playlists = list(playlists)
        self.tracks = dict(tracks or {})
        self.token = token
        self.failing = {}
        self.rate_limited = 0
        self.requests = []

    def make_app(self):
        app = web.Application()
        app.router.add_get("/v1/me/playlists", self._handle_playlists)
        app.router.add_get("/v1/playlists/{id}/tracks", self._handle_tracks)
        return app

    def api_base(self, server):
        return str(server.make_url("/v1"))

    def track_requests(self, pid):
        return [r for r in self.requests if r == f"/v1/playlists/{pid}/tracks"]

    def _check(self, request):
        self.requests.append(request.path)
        if self.rate_limited:
            self.rate_limited -= 1
            return web.Response(status=429, headers={"Retry-After": "0"})
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return web.json_response({"error": {"status": 401}}, status=401)
        if request.path in self.failing:
            return web.Response(status=self.failing[request.path])
        return None

    def _page(self, request, items):
        offset = int(request.query.get("offset", 0))
        chunk = items[offset:offset + self.PAGE_SIZE]
        nxt = None
        if offset + self.PAGE_SIZE < len(items):
            nxt = str(request.url.update_query({"offset": str(offset + self.PAGE_SIZE)}))
        return web.json_response({"items": chunk, "next": nxt})

    async def _handle_playlists(self, request):
        return self._check(request) or self._page(request, self.playlists)

    async def _handle_tracks(self, request):
        return self._check(request) or self._page(request, self.tracks.get(request.match_info["id"], []))


class FakeAuth:
    """Hands out access tokens in order; each invalidate() moves to the next."""

    def __init__(self, tokens=("token-1",), configured=True):
        self.tokens = list(tokens)
        self.invalidated = 0
        self.is_configured = configured
        self.revoked = False

    async def get_token(self):
        return self.tokens[min(self.invalidated, len(self.tokens) - 1)]

    def invalidate(self):
        self.invalidated += 1


def token_endpoint(received, response=None, status=200):
    """Token endpoint stand-in recording the posted forms."""
    async def handle(request):
        received.append(dict(await request.post()))
        return web.json_response(response or {}, status=status)

    app = web.Application()
    app.router.add_post("/api/token", handle)
    return app


class TestPkce:
    def test_challenge_is_s256_of_verifier(self):
        verifier = generate_code_verifier()
        assert 43 <= len(verifier) <= 128
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
        assert generate_code_challenge(verifier) == expected

    def test_auth_url_carries_state_and_scopes(self):
        url = build_auth_url("cid", "http://127.0.0.1:7185/callback", "challenge", state="s1")
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query)
        assert url.startswith("https://accounts.spotify.com/authorize?")
        assert query["client_id"] == ["cid"]
        assert query["state"] == ["s1"]
        assert query["code_challenge_method"] == ["S256"]
        assert "playlist-read-private" in query["scope"][0]

    @pytest.mark.asyncio
    async def test_exchange_code_posts_form(self):
        received = []
        app = token_endpoint(received, {"access_token": "a", "refresh_token": "r"})
        async with serving(app) as server:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None, exchange_code, "the-code", "cid", "verifier", "http://cb",
                str(server.make_url("/api/token")))

        assert result == {"access_token": "a", "refresh_token": "r"}
        assert received == [{
            "grant_type": "authorization_code",
            "code": "the-code",
            "redirect_uri": "http://cb",
            "client_id": "cid",
            "code_verifier": "verifier",
        }]


class TestTokens:
    def test_save_and_load(self, tmp_path):
        path = save_tokens("cid", "refresh-1")
        assert path == tmp_path / "state" / "audiowarden" / "spotify_token.json"
        assert path == token_path()
        assert os.stat(path).st_mode & 0o777 == 0o600
        assert [p.name for p in path.parent.iterdir()] == ["spotify_token.json"]

        tokens = load_tokens()
        assert tokens["client_id"] == "cid"
        assert tokens["refresh_token"] == "refresh-1"

    def test_missing_and_corrupt_files(self):
        assert load_tokens() is None
        token_path().parent.mkdir(parents=True)
        token_path().write_text("{not json", encoding="utf-8")
        assert load_tokens() is None

    def test_delete(self):
        assert delete_tokens() is None
        save_tokens("cid", "r")
        assert delete_tokens() == token_path()
        assert not token_path().exists()


class TestSpotifyAuth:
    def fake_refresh(self, monkeypatch, result=None, error=None):
        calls = []

        def refresh(client_id, refresh_token, token_url):
            calls.append((client_id, refresh_token))
            if error:
                raise error
            return result

        monkeypatch.setattr(auth_module, "refresh_access_token", refresh)
        return calls

    @pytest.mark.asyncio
    async def test_token_is_refreshed_once_and_cached(self, monkeypatch):
        calls = self.fake_refresh(monkeypatch, {"access_token": "a1", "expires_in": 3600})
        auth = SpotifyAuth()
        auth.set_credentials("cid", "r1")

        assert await auth.get_token() == "a1"
        assert await auth.get_token() == "a1"
        assert calls == [("cid", "r1")]

        auth.invalidate()
        await auth.get_token()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, monkeypatch):
        calls = self.fake_refresh(
            monkeypatch, {"access_token": "a1", "refresh_token": "r2", "expires_in": 3600})
        save_tokens("cid", "r1")
        auth = SpotifyAuth()
        assert auth.load() is True

        await auth.get_token()
        assert calls == [("cid", "r1")]
        assert load_tokens()["refresh_token"] == "r2"

    @pytest.mark.asyncio
    async def test_invalid_grant_means_revoked(self, monkeypatch, caplog):
        error = urllib.error.HTTPError("https://accounts.spotify.com/api/token", 400,
                                       "Bad Request", {}, io.BytesIO(b'{"error": "invalid_grant"}'))
        calls = self.fake_refresh(monkeypatch, error=error)
        auth = SpotifyAuth()
        auth.set_credentials("cid", "r1")

        with pytest.raises(SpotifyAuthError):
            await auth.get_token()
        assert auth.revoked is True
        assert "revoked" in caplog.text

        # No further refresh attempts until the next login
        with pytest.raises(SpotifyAuthError):
            await auth.get_token()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_not_revocation(self, monkeypatch):
        error = urllib.error.HTTPError("https://accounts.spotify.com/api/token", 503,
                                       "Unavailable", {}, io.BytesIO(b""))
        self.fake_refresh(monkeypatch, error=error)
        auth = SpotifyAuth()
        auth.set_credentials("cid", "r1")

        with pytest.raises(SpotifyError) as excinfo:
            await auth.get_token()
        assert not isinstance(excinfo.value, SpotifyAuthError)
        assert excinfo.value.status == 503
        assert auth.revoked is False

    @pytest.mark.asyncio
    async def test_without_login(self):
        auth = SpotifyAuth()
        assert auth.load() is False
        with pytest.raises(SpotifyAuthError):
            await auth.get_token()


class TestTrackUrl:
    def test_song(self):
        assert track_url(song(URL_X)) == URL_X

    @pytest.mark.parametrize("item", [
        episode(),
        song("", is_local=True),
        {"track": None},
        None,
        {"track": {"type": "track", "external_urls": {}}},
    ])
    def test_items_without_song_url(self, item):
        assert track_url(item) is None


class TestSpotifyClient:
    @pytest.mark.asyncio
    async def test_tracks_follow_next_pages(self):
        fake = FakeSpotify(tracks={"p1": [song(URL_X), episode(), song("", is_local=True),
                                          song(URL_Y), song(URL_Z)]})
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(FakeAuth(), session, fake.api_base(server))
            urls = await client.fetch_playlist_tracks("p1")

        assert urls == [URL_X, URL_Y, URL_Z]
        assert len(fake.track_requests("p1")) == 3

    @pytest.mark.asyncio
    async def test_user_playlists(self):
        fake = FakeSpotify(playlists=[
            playlist("p1", "Mine", "no thanks " + BLOCK_SONGS_KEYWORD),
            {"name": "no id"},
            playlist("p2", "Other", None),
        ])
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(FakeAuth(), session, fake.api_base(server))
            playlists = await client.fetch_user_playlists()

        assert [p["id"] for p in playlists] == ["p1", "p2"]
        assert playlists[1]["description"] == ""

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_retried(self):
        fake = FakeSpotify(tracks={"p1": [song(URL_X)]}, token="fresh")
        auth = FakeAuth(tokens=("stale", "fresh"))
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(auth, session, fake.api_base(server))
            urls = await client.fetch_playlist_tracks("p1")

        assert urls == [URL_X]
        assert auth.invalidated == 1

    @pytest.mark.asyncio
    async def test_second_401_is_an_error(self):
        fake = FakeSpotify(token="fresh")
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(FakeAuth(tokens=("stale",)), session, fake.api_base(server))
            with pytest.raises(SpotifyError) as excinfo:
                await client.fetch_user_playlists()
        assert excinfo.value.status == 401

    @pytest.mark.asyncio
    async def test_rate_limit_waits_and_retries(self):
        fake = FakeSpotify(tracks={"p1": [song(URL_Y)]})
        fake.rate_limited = 2
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(FakeAuth(), session, fake.api_base(server))
            urls = await client.fetch_playlist_tracks("p1")

        assert urls == [URL_Y]
        assert len(fake.track_requests("p1")) == 3

    @pytest.mark.asyncio
    async def test_server_error(self):
        fake = FakeSpotify()
        fake.failing["/v1/me/playlists"] = 500
        async with serving(fake.make_app()) as server, aiohttp.ClientSession() as session:
            client = SpotifyClient(FakeAuth(), session, fake.api_base(server))
            with pytest.raises(SpotifyError) as excinfo:
                await client.fetch_user_playlists()
        assert excinfo.value.status == 500


class TestCache:
    def test_blocked_songs_round_trip(self, tmp_path):
        songs = [BlockedSong(URL_X, "Mine"), BlockedSong(URL_Y, "Mine")]
        store_blocked_songs(songs)

        path = blocked_songs_path()
        assert path == tmp_path / "cache" / "audiowarden" / "blocked_songs.json.gz"
        with gzip.open(path, "rt", encoding="utf-8") as f:
            data = json.load(f)
        assert data == {"version": 1, "blocked_songs": [
            {"spotify_url": URL_X, "playlist_name": "Mine"},
            {"spotify_url": URL_Y, "playlist_name": "Mine"},
        ]}
        assert load_blocked_songs() == songs

    def test_missing_or_unreadable_cache_is_empty(self):
        assert load_blocked_songs() == []
        path = blocked_songs_path()
        path.parent.mkdir(parents=True)
        path.write_bytes(b"not gzip")
        assert load_blocked_songs() == []

    def test_unknown_version_is_ignored(self):
        path = blocked_songs_path()
        path.parent.mkdir(parents=True)
        with gzip.open(path, "wt", encoding="utf-8") as f:
            json.dump({"version": 2, "blocked_songs": []}, f)
        assert load_blocked_songs() == []

    def test_new_snapshot_replaces_old(self):
        store_playlist_songs("p1", "AAA/1", [BlockedSong(URL_X, "Mine")])
        assert load_playlist_songs("p1", "AAA/1") == [BlockedSong(URL_X, "Mine")]
        assert load_playlist_songs("p1", "BBB") is None

        store_playlist_songs("p1", "BBB", [BlockedSong(URL_Y, "Mine")])
        assert not playlist_path("p1", "AAA/1").exists()
        assert load_playlist_songs("p1", "BBB") == [BlockedSong(URL_Y, "Mine")]


class TestPlaylistSync:
    def blocking_account(self):
        return FakeSpotify(
            playlists=[
                playlist("p1", "Never again", f"songs I skip {BLOCK_SONGS_KEYWORD}"),
                playlist("p2", "Favourites", "good stuff"),
                playlist("p3", "Also blocked", BLOCK_SONGS_KEYWORD),
            ],
            tracks={
                "p1": [song(URL_Y), song(URL_Z), episode()],
                "p2": [song(URL_X)],
                "p3": [song(URL_Z)],
            })

    def test_keyword(self):
        assert is_blocking_playlist({"description": "x audiowarden:block_songs y"})
        assert not is_blocking_playlist({"description": None})
        assert not is_blocking_playlist({"description": "audiowarden"})

    @pytest.mark.asyncio
    async def test_sync_queues_union_of_blocking_playlists(self):
        fake = self.blocking_account()
        queue = asyncio.Queue()
        async with serving(fake.make_app()) as server:
            sync = PlaylistSync(FakeAuth(), queue, interval=60, api_base=fake.api_base(server))
            await sync.sync_once()

        event = queue.get_nowait()
        assert isinstance(event, PlaylistBlocklistUpdate)
        assert event.entries == {Y, Z}
        assert event.playlists == ("Never again", "Also blocked")
        assert fake.track_requests("p2") == []

        status = sync.status()
        assert status["playlists"] == ["Never again", "Also blocked"]
        assert status["songs"] == 2
        assert status["last_error"] is None
        assert status["last_sync"] is not None
        assert {s.url for s in load_blocked_songs()} == {URL_Y, URL_Z}

    @pytest.mark.asyncio
    async def test_failed_playlist_is_left_out(self, caplog):
        fake = self.blocking_account()
        fake.failing["/v1/playlists/p1/tracks"] = 500
        queue = asyncio.Queue()
        async with serving(fake.make_app()) as server:
            sync = PlaylistSync(FakeAuth(), queue, interval=60, api_base=fake.api_base(server))
            await sync.sync_once()

        assert queue.get_nowait().entries == {Z}
        assert "Cannot determine playlist tracks for Never again" in caplog.text

    @pytest.mark.asyncio
    async def test_unchanged_playlist_is_not_fetched_again(self):
        fake = self.blocking_account()
        queue = asyncio.Queue()
        async with serving(fake.make_app()) as server:
            sync = PlaylistSync(FakeAuth(), queue, interval=60, api_base=fake.api_base(server))
            await sync.sync_once()
            await sync.sync_once()
            assert len(fake.track_requests("p1")) == 1

            fake.playlists[0]["snapshot_id"] = "snap-2"
            fake.tracks["p1"] = [song(URL_X)]
            await sync.sync_once()

        assert len(fake.track_requests("p1")) == 2
        events = [queue.get_nowait() for _ in range(3)]
        assert events[1].entries == {Y, Z}
        assert events[2].entries == {X, Z}

    @pytest.mark.asyncio
    async def test_cached_songs_are_published_first(self):
        store_blocked_songs([BlockedSong(URL_X, "Never again")])
        queue = asyncio.Queue()
        sync = PlaylistSync(FakeAuth(configured=False), queue, interval=60)

        assert await sync.publish_cached() is True
        event = queue.get_nowait()
        assert event.entries == {X}
        assert event.reason == "cache"

    @pytest.mark.asyncio
    async def test_nothing_cached(self):
        sync = PlaylistSync(FakeAuth(), asyncio.Queue(), interval=60)
        assert await sync.publish_cached() is False

    @pytest.mark.asyncio
    async def test_run_records_failures_and_keeps_going(self):
        fake = self.blocking_account()
        fake.failing["/v1/me/playlists"] = 503
        queue = asyncio.Queue()
        async with serving(fake.make_app()) as server:
            sync = PlaylistSync(FakeAuth(), queue, interval=60, api_base=fake.api_base(server))
            task = asyncio.create_task(sync.run())
            try:
                await wait_until(lambda: sync.last_error is not None)
                assert "503" in sync.last_error
                assert not task.done()

                del fake.failing["/v1/me/playlists"]
                sync.trigger()
                event = await asyncio.wait_for(queue.get(), timeout=2)
            finally:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        assert event.entries == {Y, Z}
        assert sync.last_error is None

    @pytest.mark.asyncio
    async def test_run_waits_for_login(self):
        fake = self.blocking_account()
        auth = FakeAuth(configured=False)
        queue = asyncio.Queue()
        async with serving(fake.make_app()) as server:
            sync = PlaylistSync(auth, queue, interval=60, api_base=fake.api_base(server))
            task = asyncio.create_task(sync.run())
            try:
                await asyncio.sleep(0.05)
                assert fake.requests == []

                auth.is_configured = True
                sync.trigger()
                event = await asyncio.wait_for(queue.get(), timeout=2)
            finally:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        assert event.entries == {Y, Z}

    @pytest.mark.parametrize("configured", [0, -5, "hourly", False])
    def test_unusable_interval_falls_back(self, tmp_path, caplog, configured):
        config_file = tmp_path / "config" / "audiowarden" / "config.json"
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"spotify": {"sync_interval": configured}}),
                               encoding="utf-8")

        sync = PlaylistSync(FakeAuth(), asyncio.Queue())
        assert sync.interval == DEFAULT_SYNC_INTERVAL
        assert "Invalid Spotify sync interval" in caplog.text


class TestLoginServer:
    async def start_login(self, client):
        resp = await client.get("/authorize_audiowarden", allow_redirects=False)
        assert resp.status == 302
        location = resp.headers["Location"]
        return urllib.parse.parse_qs(urllib.parse.urlsplit(location).query)

    @pytest.mark.asyncio
    async def test_login_redirects_to_spotify(self):
        login = LoginServer(SpotifyAuth(), port=7185)
        client = TestClient(TestServer(login.make_app()))
        await client.start_server()
        try:
            query = await self.start_login(client)
        finally:
            await client.close()

        assert login.login_url == "http://127.0.0.1:7185/authorize_audiowarden"
        assert query["client_id"] == [DEFAULT_CLIENT_ID]
        assert query["redirect_uri"] == ["http://127.0.0.1:7185/callback"]
        assert query["state"] == [login._pkce_state["state"]]
        assert query["code_challenge"] == [
            generate_code_challenge(login._pkce_state["code_verifier"])]

    @pytest.mark.asyncio
    async def test_callback_with_wrong_state_is_rejected(self):
        login = LoginServer(SpotifyAuth())
        client = TestClient(TestServer(login.make_app()))
        await client.start_server()
        try:
            await self.start_login(client)
            resp = await client.get("/callback", params={"code": "c", "state": "forged"})
            assert resp.status == 400
            resp = await client.get("/callback", params={"error": "access_denied"})
            assert resp.status == 400
        finally:
            await client.close()
        assert not login.completed.is_set()
        assert load_tokens() is None

    @pytest.mark.asyncio
    async def test_successful_login_is_stored(self):
        received = []
        token_app = token_endpoint(
            received, {"access_token": "a1", "refresh_token": "r1", "expires_in": 3600})
        logins = []
        async with serving(token_app) as token_server:
            auth = SpotifyAuth()
            login = LoginServer(auth, client_id="my-app", port=7185,
                                on_login=lambda: logins.append(True),
                                token_url=str(token_server.make_url("/api/token")))
            client = TestClient(TestServer(login.make_app()))
            await client.start_server()
            try:
                query = await self.start_login(client)
                verifier = login._pkce_state["code_verifier"]
                resp = await client.get("/callback",
                                        params={"code": "the-code", "state": query["state"][0]})
                assert resp.status == 200
            finally:
                await client.close()

        assert received[0]["code"] == "the-code"
        assert received[0]["code_verifier"] == verifier
        assert received[0]["redirect_uri"] == "http://127.0.0.1:7185/callback"
        assert load_tokens()["refresh_token"] == "r1"
        assert load_tokens()["client_id"] == "my-app"
        assert auth.is_configured
        assert await auth.get_token() == "a1"
        assert login.completed.is_set()
        assert logins == [True]

    @pytest.mark.asyncio
    async def test_failed_code_exchange(self):
        async with serving(token_endpoint([], {"error": "invalid_grant"}, status=400)) as token_server:
            login = LoginServer(SpotifyAuth(), token_url=str(token_server.make_url("/api/token")))
            client = TestClient(TestServer(login.make_app()))
            await client.start_server()
            try:
                query = await self.start_login(client)
                resp = await client.get("/callback",
                                        params={"code": "c", "state": query["state"][0]})
                assert resp.status == 502
            finally:
                await client.close()
        assert not login.completed.is_set()
