#!/usr/bin/env python3
"""
mongod_admin.py - Locate the local mongod process and talk to it.

Shared by the entrypoint shutdown handler and the health probes.  Process
discovery goes through psutil, administrative commands through the pymongo
driver so that neither component has to shell out to ``pgrep`` or
``mongosh``.
"""

from __future__ import annotations

import os
import sys
import time
from typing import List, Optional

import psutil
from pymongo import MongoClient
from pymongo.errors import (
    ConnectionFailure,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

# Default constants
DEFAULT_HOST: str = "localhost"
DEFAULT_PORT: int = 27017
DEFAULT_TIMEOUT_SECONDS: float = 10.0
SERVER_PROCESS_NAME: str = "mongod"


def _log(message: str) -> None:
    """Print *message* to stderr with the entrypoint prefix."""

    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] ENTRYPOINT: {message}", file=sys.stderr)


def _is_server_process(info: dict) -> bool:
    """Return *True* when the psutil *info* dict describes a mongod server.

    Matching on the full command line (``pgrep -f mongod``) would also catch
    helper scripts such as ``mongodb-healthcheck``; we only accept the
    process name or the basename of the executable.
    """

    if info.get("name") == SERVER_PROCESS_NAME:
        return True
    cmdline = info.get("cmdline") or []
    return bool(cmdline) and os.path.basename(cmdline[0]) == SERVER_PROCESS_NAME


def find_mongod_processes() -> List[psutil.Process]:
    """Return every running mongod process except the current one.

    Returns:
        List[psutil.Process]: Matching processes, possibly empty.
    """
    own_pid = os.getpid()
    found: List[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        if proc.pid == own_pid:
            continue
        try:
            if _is_server_process(proc.info):
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return found


def create_client(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> MongoClient:
    """Create a direct, short-lived client bounded by *timeout* seconds.

    Args:
        host (str): The server host.
        port (int): The server port.
        timeout (float): Upper bound for server selection, connect and socket IO.

    Returns:
        MongoClient: A client that has not necessarily connected yet.
    """
    timeout_ms = int(timeout * 1000)
    return MongoClient(
        host=host,
        port=port,
        directConnection=True,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
    )


def shutdown_server(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    timeout: float = 5.0,
    client: Optional[MongoClient] = None,
) -> bool:
    """Send the administrative ``shutdown`` command.

    The server drops every connection while exiting, therefore a connection
    failure raised *by the shutdown command itself* means success.  The
    preceding ``ping`` makes sure an unreachable server is reported as a
    failure instead.

    Returns:
        bool: True when the command was delivered, False otherwise.
    """
    if client is None:
        client = create_client(host, port, timeout)
    try:
        try:
            client.admin.command("ping")
        except PyMongoError as e:
            _log(f"Server at {host}:{port} not reachable for shutdown: {e}")
            return False
        try:
            client.admin.command("shutdown")
        except ServerSelectionTimeoutError as e:
            _log(f"Shutdown command could not reach the server: {e}")
            return False
        except ConnectionFailure:
            return True
        except OperationFailure as e:
            _log(f"Shutdown command rejected: {e}")
            return False
        return True
    finally:
        client.close()
