"""
Track identity: turn a player-reported or user-pasted URL into a blocklist key.

Links copied from the Spotify client ("Share" -> "Copy Song Link") carry a
tracking parameter such as ``?si=7764fc...`` while the URL reported over MPRIS
does not, so the query string is dropped before comparing.
"""

import re
from urllib.parse import urlsplit, urlunsplit

from .model import UNKNOWN_TRACK, TrackIdentifier

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*$")


def resolve(raw_uri) -> TrackIdentifier:
    """Return the canonical identifier for *raw_uri*.

    Never raises.  Input without a usable scheme and host/path maps to
    ``UNKNOWN_TRACK``, which is never blocked.
    """
    if not isinstance(raw_uri, str):
        return UNKNOWN_TRACK
    raw = raw_uri.strip()
    if not raw or any(c.isspace() for c in raw):
        return UNKNOWN_TRACK

    try:
        parts = urlsplit(raw)
    except ValueError:
        # e.g. unbalanced brackets in an IPv6 host
        return UNKNOWN_TRACK

    scheme = parts.scheme.lower()
    if not _SCHEME_RE.match(scheme):
        return UNKNOWN_TRACK

    if parts.netloc:
        return TrackIdentifier(f"{scheme}://{parts.netloc.lower()}{parts.path or '/'}")
    if parts.path:
        # spotify:track:ID or file:///music/a.flac
        return TrackIdentifier(urlunsplit((scheme, "", parts.path, "", "")))
    return UNKNOWN_TRACK
