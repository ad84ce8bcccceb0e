# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
One-time Spotify login through a local callback server.

When audiowarden has no stored login it serves two pages on
``127.0.0.1:<spotify.redirect_port>`` (default 7185):

  GET /authorize_audiowarden  redirect to Spotify's consent page (PKCE)
  GET /callback               Spotify's redirect back: code exchange, token storage

The user opens the first URL in a browser.  After a successful callback the
login is stored, the playlist sync is triggered and the server shuts down.
"""

import asyncio
import logging
import urllib.error

from aiohttp import web

from ...lib.config import cfg
from .pkce import (
    SCOPES,
    TOKEN_URL,
    build_auth_url,
    exchange_code,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .tokens import save_tokens

logger = logging.getLogger(__name__)

# Client id of the audiowarden app registered with Spotify
DEFAULT_CLIENT_ID = "a9cc0c11a3944da8a4f97ecfc92a972d"
DEFAULT_REDIRECT_PORT = 7185
LOGIN_PATH = "/authorize_audiowarden"
CALLBACK_PATH = "/callback"


class LoginServer:
    """Serves the PKCE login pages until one login succeeds."""

    def __init__(self, auth, client_id: str | None = None, host: str = "127.0.0.1",
                 port: int | None = None, on_login=None, token_url: str = TOKEN_URL):
        self.auth = auth
        self.client_id = client_id or cfg("spotify", "client_id", default=DEFAULT_CLIENT_ID)
        self.host = host
        self.port = port or cfg("spotify", "redirect_port", default=DEFAULT_REDIRECT_PORT)
        self.on_login = on_login
        self.token_url = token_url
        self.completed = asyncio.Event()
        self._pkce_state = {}  # single pending login, single user
        self._runner: web.AppRunner | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def login_url(self) -> str:
        return self.base_url + LOGIN_PATH

    @property
    def redirect_uri(self) -> str:
        return self.base_url + CALLBACK_PATH

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(LOGIN_PATH, self._handle_start)
        app.router.add_get(CALLBACK_PATH, self._handle_callback)
        return app

    async def start(self):
        """Bind the callback server.  Raises OSError if the port is taken."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            raise
        logger.info("Please visit the following URL in your browser to log in to Spotify: %s",
                    self.login_url)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def run_until_login(self):
        """Serve until a login succeeds, then close the port."""
        try:
            await self.start()
        except OSError as e:
            logger.error("Unable to start the Spotify login on %s: %s", self.base_url, e)
            return
        try:
            await self.completed.wait()
            logger.info("Spotify login complete")
        finally:
            await self.stop()

    # ── Handlers ──

    async def _handle_start(self, request: web.Request) -> web.Response:
        """Start the PKCE flow: new verifier and state, redirect to Spotify."""
        verifier = generate_code_verifier()
        state = generate_state()
        self._pkce_state = {"code_verifier": verifier, "state": state}
        auth_url = build_auth_url(self.client_id, self.redirect_uri,
                                  generate_code_challenge(verifier), SCOPES, state)
        logger.info("Spotify login: redirecting to Spotify (redirect_uri=%s)", self.redirect_uri)
        raise web.HTTPFound(auth_url)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        """Spotify's redirect back: exchange the code and store the login."""
        error = request.query.get("error")
        if error:
            logger.warning("Spotify login denied: %s", error)
            return web.Response(text=f"Spotify authorization failed: {error}\n", status=400)

        code = request.query.get("code", "")
        state = request.query.get("state", "")
        if not code or not state:
            return web.Response(text="Bad Request\n", status=400)
        if not self._pkce_state or state != self._pkce_state["state"]:
            # Not the login we started; keep waiting for the right one
            logger.warning("Spotify login: state mismatch, ignoring callback")
            return web.Response(
                text=f"Login expired. Start again at {self.login_url}\n", status=400)

        verifier = self._pkce_state["code_verifier"]
        self._pkce_state = {}
        loop = asyncio.get_running_loop()
        try:
            token_data = await loop.run_in_executor(
                None, exchange_code, code, self.client_id, verifier, self.redirect_uri,
                self.token_url)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.error("Spotify login: code exchange failed: %s", e)
            return web.Response(text=f"Login failed: {e}\n", status=502)

        refresh_token = token_data.get("refresh_token") if isinstance(token_data, dict) else None
        if not refresh_token:
            logger.error("Spotify login: no refresh token received")
            return web.Response(text="No refresh token received\n", status=502)

        try:
            await loop.run_in_executor(None, save_tokens, self.client_id, refresh_token)
            logger.info("Spotify login stored")
        except OSError as e:
            logger.warning("Unable to store Spotify token (%s), keeping it in memory only", e)

        self.auth.set_credentials(
            self.client_id, refresh_token,
            access_token=token_data.get("access_token"),
            expires_in=token_data.get("expires_in", 3600))
        self.completed.set()
        if self.on_login:
            self.on_login()
        return web.Response(
            text="Logged in to Spotify. audiowarden now blocks the songs of your "
                 "blocking playlists; you can close this page.\n")
