"""
Players: the media player session audiowarden watches and controls.

A player is reached over the D-Bus session bus through its MPRIS interface.
audiowarden follows exactly ONE player session (``player.name`` in the config,
Spotify by default).

  mpris.py  — PlayerWatcher: subscribes to property changes, yields snapshots
  skip.py   — SkipDispatcher: issues the ``Next`` call
"""
