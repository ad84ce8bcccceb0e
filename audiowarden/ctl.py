"""
audiowarden-ctl: send a command to the running audiowarden service.

Usage:
    audiowarden-ctl block_current_song
    audiowarden-ctl --socket /run/user/1000/audiowarden/audiowarden.sock block_current_song
"""

import argparse
import socket
import sys

from .command_server import socket_path
from .errors import StartupError
from .model import Command


def send_command(command: Command, path: str) -> None:
    """Write one command token to the socket at *path*.  Raises OSError on failure."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(5.0)
    try:
        sock.connect(path)
        sock.sendall(f"{command.value}\n".encode("ascii"))
    finally:
        sock.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="audiowarden-ctl",
                                     description="Send a command to audiowarden.")
    parser.add_argument("command", choices=[c.value for c in Command])
    parser.add_argument("--socket", help="path of the command socket")
    args = parser.parse_args(argv)

    path = args.socket
    if not path:
        try:
            path = str(socket_path())
        except StartupError as e:
            print(f"audiowarden-ctl: {e}", file=sys.stderr)
            return 2

    try:
        send_command(Command(args.command), path)
    except FileNotFoundError:
        print(f"audiowarden-ctl: audiowarden is not running (no socket at {path})", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"audiowarden-ctl: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
