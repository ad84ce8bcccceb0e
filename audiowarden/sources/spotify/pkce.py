# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PKCE (Proof Key for Code Exchange) helpers for the Spotify login.

Authorization Code with PKCE: no client secret, only the client id of the
audiowarden Spotify app (or the user's own one from config).

Uses blocking urllib.request; callers wrap the token requests in
run_in_executor().

Usage:
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)
    url = build_auth_url(client_id, redirect_uri, challenge, SCOPES, state)
    # ... user completes the login in the browser ...
    tokens = exchange_code(code, client_id, verifier, redirect_uri)
    tokens = refresh_access_token(client_id, refresh_token)
"""

import base64
import hashlib
import json
import os
import secrets
import string
import urllib.parse
import urllib.request

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
SCOPES = "playlist-read-private playlist-read-collaborative"

_STATE_ALPHABET = string.ascii_letters + string.digits


def generate_code_verifier(length=128):
    """Generate a random code verifier string (43-128 chars, URL-safe)."""
    raw = os.urandom(length)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")[:length]


def generate_code_challenge(verifier):
    """Generate a code challenge from a verifier (S256 method)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state(length=16):
    """Random value echoed back by the redirect; a mismatch aborts the login."""
    return "".join(secrets.choice(_STATE_ALPHABET) for _ in range(length))


def build_auth_url(client_id, redirect_uri, code_challenge, scopes=SCOPES, state=None):
    """Build the Spotify authorization URL for PKCE flow."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scopes,
        "code_challenge_method": "S256",
        "code_challenge": code_challenge,
    }
    if state:
        params["state"] = state
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


def _post_form(body, token_url):
    data = urllib.parse.urlencode(body).encode()
    req = urllib.request.Request(
        token_url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    with urllib.request.urlopen(req, timeout=10) as resp:
        return json.loads(resp.read().decode())


def exchange_code(code, client_id, code_verifier, redirect_uri, token_url=TOKEN_URL):
    """Exchange an authorization code for access + refresh tokens.

    Returns dict with 'access_token', 'refresh_token', 'expires_in', etc.
    Raises urllib.error.HTTPError on failure.
    """
    return _post_form({
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }, token_url)


def refresh_access_token(client_id, refresh_token, token_url=TOKEN_URL):
    """Refresh an access token (client_id in body, no secret).

    Returns dict with 'access_token', optionally 'refresh_token' (rotated).
    Raises urllib.error.HTTPError on failure.
    """
    return _post_form({
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }, token_url)
