#!/usr/bin/env python3
"""
wait_for_port.py - Wait until nothing is listening on the database port.

A previous server instance sharing the pod network namespace (restart,
sidecar, slow shutdown) may still hold the port for a few seconds.  The
wait is best-effort: callers proceed anyway once the budget is spent.
"""

import argparse
import os
import signal
import sys
import threading
import time
from types import FrameType
from typing import Optional

import psutil

# Default constants for script
DEFAULT_PORT: int = 27017
DEFAULT_MAX_ATTEMPTS: int = 30
DEFAULT_SLEEP_SECONDS: float = 1.0


def _log(message: str) -> None:
    """Print *message* to stderr with the entrypoint prefix."""

    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] ENTRYPOINT: {message}", file=sys.stderr)


def port_in_use(port: int) -> bool:
    """Return True when a TCP or UDP socket is listening on *port*.

    Args:
        port (int): The port to look for.

    Returns:
        bool: True if the port is bound by a listening socket.
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied as e:
        _log(f"WARNING: cannot inspect sockets ({e}), assuming port {port} is free")
        return False

    for conn in connections:
        if not conn.laddr or conn.laddr.port != port:
            continue
        # UDP sockets have no state; TCP ones only count while listening.
        if conn.status in (psutil.CONN_LISTEN, psutil.CONN_NONE):
            return True
    return False


def wait_for_port_free(
    port: int = DEFAULT_PORT,
    max_attempts: Optional[int] = None,
    sleep_seconds: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Poll until *port* is free or the attempt budget is spent.

    Args:
        port (int): The port to watch.
        max_attempts (Optional[int]): Maximum polls. Defaults to DEFAULT_MAX_ATTEMPTS.
        sleep_seconds (Optional[float]): Pause between polls. Defaults to DEFAULT_SLEEP_SECONDS.
        cancel (Optional[threading.Event]): Stops the wait early when set.

    Returns:
        bool: True if the port became free, False if it is still in use.
    """
    if max_attempts is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    if sleep_seconds is None:
        sleep_seconds = DEFAULT_SLEEP_SECONDS

    for attempt in range(1, max_attempts + 1):
        if not port_in_use(port):
            return True
        _log(f"Port {port} is already in use, waiting... (attempt {attempt} of {max_attempts})")
        if cancel is not None:
            if cancel.wait(sleep_seconds):
                _log("Wait for port cancelled")
                return False
        else:
            time.sleep(sleep_seconds)
    return not port_in_use(port)


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle termination signals."""

    _log(f"Received signal {signum}, exiting.")
    sys.exit(1)


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(description="Wait until a local port is no longer in use.")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("MONGODB_PORT", str(DEFAULT_PORT))),
        help="Port to watch (default: $MONGODB_PORT or 27017)",
    )
    parser.add_argument("--attempts", type=int, default=DEFAULT_MAX_ATTEMPTS, help="Maximum number of polls")
    parser.add_argument("--sleep", type=float, default=DEFAULT_SLEEP_SECONDS, help="Seconds between polls")
    return parser.parse_args()


def main() -> None:
    """Main function to wait for the port to be released."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    args = parse_arguments()

    if wait_for_port_free(args.port, args.attempts, args.sleep):
        _log(f"Port {args.port} is free.")
        sys.exit(0)
    _log(f"Warning: Port {args.port} may still be in use")
    sys.exit(1)


if __name__ == "__main__":
    main()
