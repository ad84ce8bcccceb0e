"""
Error taxonomy for audiowarden.

Only ``StartupError`` is meant to reach the process boundary.  The rest are
caught where they happen and end up in the log.
"""


class AudioWardenError(Exception):
    """Base class for audiowarden errors."""


class StartupError(AudioWardenError):
    """Fatal: the service cannot start (bus unreachable, socket not bindable, ...)."""


class TransientBusError(AudioWardenError):
    """A recoverable D-Bus failure: dropped connection, failed property fetch."""


class BlocklistParseWarning(UserWarning):
    """A blocklist line that is not a track URL.  Logged and skipped."""

    def __init__(self, line_number: int, line: str):
        super().__init__(
            f"Error in line {line_number}: the following is not a valid URL: {line}")
        self.line_number = line_number
        self.line = line


class SpotifyError(AudioWardenError):
    """A Spotify Web API or token request failed.  The playlist sync logs it and retries later."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SpotifyAuthError(SpotifyError):
    """No usable Spotify login: never logged in, or the refresh token was revoked."""
