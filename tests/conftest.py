"""Shared fixtures for the audiowarden test suite."""

import asyncio
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest
from dbus_next import Message, MessageType, Variant

from audiowarden.identity import resolve
from audiowarden.lib import config
from audiowarden.model import SkipResult
from audiowarden.players.mpris import (
    DBUS_PATH,
    DBUS_SERVICE,
    MPRIS_PATH,
    NAME_HAS_NO_OWNER,
    PLAYER_INTERFACE,
    PROPERTIES_INTERFACE,
)

SPOTIFY = "org.mpris.MediaPlayer2.spotify"
PLAYER_OWNER = ":1.42"

URL_X = "https://open.spotify.com/track/6CE6xXEI29e6X0noaNugIW"
URL_Y = "https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC"
URL_Z = "https://open.spotify.com/track/0VjIjW4GlUZAMYd2vXMi3b"

X = resolve(URL_X)
Y = resolve(URL_Y)
Z = resolve(URL_Z)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Point config, runtime, state and cache directories at tmp_path and drop cached config."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path / "run"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in ("CONFIGURATION_DIRECTORY", "RUNTIME_DIRECTORY", "STATE_DIRECTORY",
                "CACHE_DIRECTORY", "NOTIFY_SOCKET", "WATCHDOG_USEC"):
        monkeypatch.delenv(var, raising=False)
    config.set_config_path(None)
    yield
    config.set_config_path(None)


@pytest.fixture
def short_tmp():
    """A short directory for Unix sockets (sun_path is limited to 108 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="aw-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


class FakeDispatcher:
    """Records skip calls; returns queued results, then OK."""

    def __init__(self, results=()):
        self.calls = 0
        self.results = list(results)

    async def skip(self) -> SkipResult:
        self.calls += 1
        return self.results.pop(0) if self.results else SkipResult.OK


def reply(body=(), error_name=None):
    """Minimal stand-in for a dbus_next reply message."""
    return SimpleNamespace(
        message_type=MessageType.ERROR if error_name else MessageType.METHOD_RETURN,
        error_name=error_name,
        body=list(body),
    )


class FakeBus:
    """Just enough of dbus_next.aio.MessageBus for the watcher and dispatcher."""

    def __init__(self, owner=None, properties=None, unique_name=":1.7"):
        self.owner = owner
        self.properties = properties or {}
        self.unique_name = unique_name
        self.handlers = []
        self.calls = []
        self.errors = {}
        self.connected = True
        self._disconnected = asyncio.Event()

    def add_message_handler(self, handler):
        self.handlers.append(handler)

    async def call(self, msg):
        self.calls.append(msg)
        if msg.member in self.errors:
            return reply(["failed"], error_name=self.errors[msg.member])
        if msg.member == "GetNameOwner":
            if self.owner:
                return reply([self.owner])
            return reply(["no owner"], error_name=NAME_HAS_NO_OWNER)
        if msg.member == "GetAll":
            return reply([self.properties])
        return reply()

    def members_called(self):
        return [m.member for m in self.calls]

    async def wait_for_disconnect(self):
        await self._disconnected.wait()

    def disconnect(self):
        self.connected = False
        self._disconnected.set()

    def emit(self, msg):
        for handler in self.handlers:
            handler(msg)


def metadata(url, title="Song", artists=("Artist",)):
    return Variant("a{sv}", {
        "xesam:url": Variant("s", url),
        "xesam:title": Variant("s", title),
        "xesam:artist": Variant("as", list(artists)),
    })


def player_properties(url=URL_X, status="Playing", **kwargs):
    return {"Metadata": metadata(url, **kwargs), "PlaybackStatus": Variant("s", status)}


def properties_changed(changed, sender=PLAYER_OWNER, interface=PLAYER_INTERFACE):
    return Message(message_type=MessageType.SIGNAL, path=MPRIS_PATH,
                   interface=PROPERTIES_INTERFACE, member="PropertiesChanged",
                   sender=sender, signature="sa{sv}as", body=[interface, changed, []])


def name_owner_changed(old_owner, new_owner, name=SPOTIFY):
    return Message(message_type=MessageType.SIGNAL, path=DBUS_PATH,
                   interface=DBUS_SERVICE, member="NameOwnerChanged",
                   sender=DBUS_SERVICE, signature="sss", body=[name, old_owner, new_owner])
