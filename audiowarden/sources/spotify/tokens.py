# audiowarden
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Atomic storage of the Spotify login.

Stores client_id + refresh_token in ``spotify_token.json`` inside the state
directory ($STATE_DIRECTORY, else $XDG_STATE_HOME/audiowarden, else
~/.local/state/audiowarden).  Writes go to a temp file that is then renamed,
so a crash mid-write never corrupts the file.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from ...lib.config import state_dir

logger = logging.getLogger(__name__)

TOKEN_FILENAME = "spotify_token.json"


def token_path() -> Path:
    return state_dir() / TOKEN_FILENAME


def load_tokens():
    """Load tokens from disk. Returns dict or None if not found."""
    path = token_path()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.warning("Ignoring unreadable token file %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def save_tokens(client_id, refresh_token):
    """Atomically save tokens to disk.  Returns the path written."""
    path = token_path()
    data = {
        "client_id": client_id,
        "refresh_token": refresh_token,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise

    return path


def delete_tokens():
    """Delete the token file from disk. Returns the path deleted, or None."""
    path = token_path()
    try:
        path.unlink()
    except FileNotFoundError:
        return None
    return path
