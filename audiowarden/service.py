#!/usr/bin/env python3
# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
audiowarden service.

Watches the configured MPRIS player and skips every song listed in
blocked_songs.conf.  Wiring:

    PlayerWatcher ──┐
    CommandServer ──┤
    BlocklistWatcher┼──> asyncio.Queue ──> EnforcementCoordinator ──> SkipDispatcher
    PlaylistSync ───┘  (only when spotify.enabled)

Optional HTTP status endpoint (only when http.port is configured):
  GET /status   coordinator state, current track, session state

Spotify login (only when spotify.enabled and no login is stored yet):
  GET http://127.0.0.1:7185/authorize_audiowarden

Exit codes: 0 on SIGTERM/SIGINT, 1 when startup fails.
"""

import argparse
import asyncio
import logging
import signal
import sys

from aiohttp import web

from .blocklist import Blocklist, BlocklistFile, BlocklistWatcher
from .command_server import CommandServer
from .coordinator import EnforcementCoordinator
from .errors import StartupError
from .lib.config import cfg, set_config_path
from .lib.watchdog import sd_notify, watchdog_loop
from .players.mpris import PlayerWatcher
from .players.skip import SkipDispatcher
from .sources.spotify import LoginServer, PlaylistSync, SpotifyAuth

logger = logging.getLogger("audiowarden")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class AudioWarden:
    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.queue: asyncio.Queue = asyncio.Queue()
        self.source = BlocklistFile()
        self.watcher = PlayerWatcher()
        self.dispatcher = SkipDispatcher(self.watcher, dry_run=dry_run)
        self.command_server = CommandServer(self.queue)
        self.blocklist: Blocklist | None = None
        self.coordinator: EnforcementCoordinator | None = None
        self._tasks: list[asyncio.Task] = []
        self._runner: web.AppRunner | None = None
        self.playlist_sync: PlaylistSync | None = None
        self.login_server: LoginServer | None = None
        self._login_task: asyncio.Task | None = None

    def load_blocklist(self) -> Blocklist:
        """First load.  A missing file is not fatal, an unreadable one is."""
        self.source.ensure_exists()
        try:
            blocklist = self.source.load()
        except FileNotFoundError:
            logger.warning("No blocklist at %s, starting with an empty one", self.source.path)
            blocklist = Blocklist()
        except OSError as e:
            raise StartupError(f"Unable to read blocklist {self.source.path}: {e}") from e
        logger.info("%d songs are blocked.", len(blocklist))
        return blocklist

    async def start(self):
        self.blocklist = self.load_blocklist()
        self.coordinator = EnforcementCoordinator(
            self.blocklist, self.dispatcher, source=self.source,
            persist=cfg("blocklist", "persist", default=True))

        await self.watcher.start()
        await self.command_server.start()

        self._tasks = [
            asyncio.create_task(self.coordinator.run(self.queue), name="coordinator"),
            asyncio.create_task(self._pump_snapshots(), name="player-watcher"),
            asyncio.create_task(BlocklistWatcher(self.source, self.queue).run(),
                                name="blocklist-watcher"),
        ]

        if cfg("spotify", "enabled", default=False):
            self._start_spotify()

        port = cfg("http", "port")
        if port:
            await self._start_http(cfg("http", "host", default="127.0.0.1"), port)

        # READY=1 goes out with the first heartbeat
        self._tasks.append(asyncio.create_task(watchdog_loop(), name="watchdog"))
        logger.info("audiowarden started (player=%s%s)", self.watcher.bus_name,
                    ", dry run" if self.dry_run else "")

    def _start_spotify(self):
        auth = SpotifyAuth()
        self.playlist_sync = PlaylistSync(auth, self.queue)
        self._tasks.append(asyncio.create_task(self.playlist_sync.run(), name="playlist-sync"))
        if not auth.load():
            # Blocking continues without the login; the sync starts once it succeeds
            self.login_server = LoginServer(auth, on_login=self.playlist_sync.trigger)
            self._login_task = asyncio.create_task(self.login_server.run_until_login(),
                                                   name="spotify-login")

    def watched_tasks(self) -> list[asyncio.Task]:
        """Tasks whose end means the service can no longer do its job."""
        tasks = list(self._tasks)
        if self.watcher.supervisor is not None:
            tasks.append(self.watcher.supervisor)
        return tasks

    async def _pump_snapshots(self):
        async for snapshot in self.watcher:
            await self.queue.put(snapshot)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await self.start()
            stopper = asyncio.create_task(stop_event.wait())
            done, _ = await asyncio.wait([stopper, *self.watched_tasks()],
                                         return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
            for task in done:
                if task is not stopper:
                    # Producers and the consumer never return; surface whatever stopped them
                    task.result()
                    logger.error("Task %s ended unexpectedly", task.get_name())
            if stop_event.is_set():
                logger.info("Received shutdown signal")
        finally:
            await self.shutdown()

    async def shutdown(self):
        sd_notify("STOPPING=1")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._login_task:
            self._login_task.cancel()
            await asyncio.gather(self._login_task, return_exceptions=True)
            self._login_task = None

        await self.command_server.stop()
        await self.watcher.stop()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("audiowarden stopped")

    # ── HTTP status ──

    async def _start_http(self, host: str, port: int):
        app = web.Application()
        app.router.add_get("/status", self._handle_status)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        try:
            await site.start()
        except OSError as e:
            raise StartupError(f"Unable to bind status endpoint {host}:{port}: {e}") from e
        logger.info("Status endpoint on http://%s:%d/status", host, port)

    def status(self) -> dict:
        result = self.coordinator.status() if self.coordinator else {}
        result.update({
            "player": self.watcher.bus_name,
            "session": self.watcher.state.value,
            "dry_run": self.dry_run,
        })
        if self.playlist_sync:
            result["spotify"] = self.playlist_sync.status()
        return result

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.status())


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="audiowarden",
        description="Skip blocked songs in your media player.")
    parser.add_argument("--config", help="path of config.json")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--dry-run", action="store_true",
                        help="log blocked songs but do not skip them")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    set_config_path(args.config)
    level = args.log_level or cfg("logging", "level", default="INFO")
    logging.getLogger().setLevel(getattr(logging, str(level).upper(), logging.INFO))

    try:
        asyncio.run(AudioWarden(dry_run=args.dry_run).run())
    except StartupError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
