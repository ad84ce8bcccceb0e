# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Configuration loader for audiowarden.

Loads a single optional JSON config file.  Search order:
  1. path given with --config            (set_config_path)
  2. $CONFIGURATION_DIRECTORY/config.json  (set by systemd)
  3. $XDG_CONFIG_HOME/audiowarden/config.json
  4. ~/.config/audiowarden/config.json

Every value has a default, so running without a config file is normal.

Usage:
    from audiowarden.lib.config import cfg

    player_name = cfg("player", "name", default="spotify")
    persist     = cfg("blocklist", "persist", default=True)
    sync        = cfg("spotify", "sync_interval", default=3600)
    http        = cfg("http")  # returns the whole dict
"""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

APPLICATION_NAME = "audiowarden"

_config: dict | None = None
_explicit_path: str | None = None


def config_dir() -> Path:
    """Directory holding config.json and blocked_songs.conf."""
    # CONFIGURATION_DIRECTORY is set when running under systemd with ConfigurationDirectory=
    configuration_directory = os.environ.get("CONFIGURATION_DIRECTORY")
    if configuration_directory:
        return Path(configuration_directory)
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / APPLICATION_NAME
    return Path.home() / ".config" / APPLICATION_NAME


def runtime_dir() -> Path | None:
    """Per-user runtime directory for the command socket, or None if unknown."""
    runtime_directory = os.environ.get("RUNTIME_DIRECTORY")
    if runtime_directory:
        return Path(runtime_directory)
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        return Path(xdg_runtime_dir) / APPLICATION_NAME
    return None


def state_dir() -> Path:
    """Directory for persistent state (the Spotify login)."""
    state_directory = os.environ.get("STATE_DIRECTORY")
    if state_directory:
        return Path(state_directory)
    xdg_state_home = os.environ.get("XDG_STATE_HOME")
    if xdg_state_home:
        return Path(xdg_state_home) / APPLICATION_NAME
    return Path.home() / ".local" / "state" / APPLICATION_NAME


def cache_dir() -> Path:
    """Directory for data that can be fetched again (playlist contents)."""
    cache_directory = os.environ.get("CACHE_DIRECTORY")
    if cache_directory:
        return Path(cache_directory)
    xdg_cache_home = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache_home:
        return Path(xdg_cache_home) / APPLICATION_NAME
    return Path.home() / ".cache" / APPLICATION_NAME


def _search_paths() -> list[Path]:
    paths = []
    if _explicit_path:
        paths.append(Path(_explicit_path))
    paths.append(config_dir() / "config.json")
    return paths


def _validate(config: dict, path) -> None:
    """Warn about missing or suspicious config values."""
    for section in ("player", "bus", "blocklist", "socket", "http", "logging", "spotify"):
        value = config.get(section)
        if value is not None and not isinstance(value, dict):
            logger.warning("Config %s: section '%s' should be an object", path, section)
    player = config.get("player") or {}
    name = player.get("name")
    if name is not None and (not isinstance(name, str) or not name or "/" in name):
        logger.warning("Config %s: player.name '%s' is not a valid MPRIS player name", path, name)
    blocklist = config.get("blocklist") or {}
    interval = blocklist.get("poll_interval")
    if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
        logger.warning("Config %s: blocklist.poll_interval must be a positive number", path)
    http = config.get("http") or {}
    port = http.get("port")
    if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
        logger.warning("Config %s: http.port %s is out of range", path, port)
    spotify = config.get("spotify") or {}
    for key in ("sync_interval", "redirect_port"):
        value = spotify.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))
                                  or value <= 0):
            logger.warning("Config %s: spotify.%s must be a positive number", path, key)


def set_config_path(path: str | None) -> None:
    """Use *path* first; drops any cached config."""
    global _explicit_path, _config
    _explicit_path = path
    _config = None


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path, encoding="utf-8") as f:
                loaded = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue
        if not isinstance(loaded, dict):
            logger.error("Config %s: top level must be an object", path)
            continue
        _config = loaded
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        return _config

    logger.debug("No config.json found, using defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("player")                      -> config["player"]
    cfg("player", "name")              -> config["player"]["name"]
    cfg("socket", "read_timeout", default=5)  -> config["socket"]["read_timeout"] or 5
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        value = val.get(key)
        return value if value is not None else default
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
