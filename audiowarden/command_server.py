# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Local command socket.

Listens on a Unix socket in the per-user runtime directory
($RUNTIME_DIRECTORY/audiowarden.sock under systemd, otherwise
$XDG_RUNTIME_DIR/audiowarden/audiowarden.sock).  Each connection sends one
newline-terminated ASCII token and is then closed; nothing is sent back.

    $ echo block_current_song | socat - UNIX-CONNECT:$XDG_RUNTIME_DIR/audiowarden/audiowarden.sock
    $ audiowarden-ctl block_current_song

Recognised tokens become ``Command`` values on the coordinator's queue.
"""

import asyncio
import logging
from pathlib import Path

from .errors import StartupError
from .lib.config import cfg, runtime_dir
from .model import Command

logger = logging.getLogger(__name__)

SOCKET_FILENAME = "audiowarden.sock"
MAX_LINE = 1024


def socket_path() -> Path:
    """Where the command socket lives.  Raises StartupError if it cannot be determined."""
    configured = cfg("socket", "path")
    if configured:
        return Path(configured).expanduser()
    directory = runtime_dir()
    if directory is None:
        raise StartupError(
            "Neither RUNTIME_DIRECTORY nor XDG_RUNTIME_DIR environment variables are set.")
    return directory / SOCKET_FILENAME


class CommandServer:
    """Accepts one command per connection and queues it for the coordinator."""

    def __init__(self, queue: asyncio.Queue, path: str | Path | None = None,
                 read_timeout: float | None = None):
        self.queue = queue
        self._path = Path(path) if path else None
        self.read_timeout = read_timeout or cfg("socket", "read_timeout", default=5.0)
        self._server: asyncio.AbstractServer | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            self._path = socket_path()
        return self._path

    async def start(self):
        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # A socket file left over from a previous run makes bind() fail
            path.unlink(missing_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(path), limit=MAX_LINE)
        except OSError as e:
            raise StartupError(f"Unable to open unix socket {path}: {e}") from e
        logger.info("Listening for commands on %s", path)

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug("Could not remove %s: %s", self.path, e)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
            token = line.decode("ascii").strip()
        except asyncio.TimeoutError:
            logger.warning("Command client sent nothing within %.1fs", self.read_timeout)
        except UnicodeDecodeError:
            logger.warning("Command is not ASCII: %r", line[:64])
        except (OSError, ValueError) as e:
            # ValueError: line longer than MAX_LINE
            logger.error("Unable to read message from socket: %s", e)
        else:
            command = Command.from_token(token)
            if command is None:
                logger.warning("Command not recognized: %r", token)
            else:
                logger.info("Received command %s", token)
                await self.queue.put(command)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
