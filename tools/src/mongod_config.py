#!/usr/bin/env python3
"""Materialise the ``mongod.conf`` configuration file.

The document is a pure function of the runtime settings and an optional
template: when ``mongod.conf.template`` exists in the configuration
directory it is copied verbatim, otherwise a minimal Kubernetes friendly
default is synthesised.  A ``replication`` section is appended when a
replica-set name is configured and the base document does not already
declare one.

Templates are copied byte for byte: they are decoded with the
``surrogateescape`` handler and written back in binary mode, so foreign
encodings and CRLF line endings survive unchanged.

Writes are atomic (temporary file + rename) so that a server reading the
file never observes a half written document.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional


CONFIG_FILE_NAME: str = "mongod.conf"
TEMPLATE_FILE_NAME: str = "mongod.conf.template"
CONFIG_FILE_MODE: int = 0o640
ENCODING: str = "utf-8"
ENCODING_ERRORS: str = "surrogateescape"

DEFAULT_TEMPLATE: str = """\
# MongoDB configuration for Kubernetes
storage:
  dbPath: {data_dir}
  journal:
    enabled: true

systemLog:
  destination: file
  logAppend: true
  path: {log_path}
  logRotate: reopen

net:
  port: {port}
  bindIpAll: true

processManagement:
  timeZoneInfo: /usr/share/zoneinfo

security:
  authorization: disabled
"""

REPLICATION_TEMPLATE: str = """
replication:
  replSetName: {replica_set_name}
"""

# Top-level key only; a commented ``#replication:`` line does not count.
_REPLICATION_RE = re.compile(r"^replication\s*:", re.MULTILINE)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _log(message: str) -> None:
    """Print *message* to stderr with the entrypoint prefix."""

    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] ENTRYPOINT: {message}", file=sys.stderr)


def has_replication_section(text: str) -> bool:
    """Return *True* when *text* declares a top-level ``replication`` key."""

    return bool(_REPLICATION_RE.search(text))


def encode_config(text: str) -> bytes:
    """Return the on-disk bytes of *text*, restoring undecodable template bytes."""

    return text.encode(ENCODING, ENCODING_ERRORS)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_config(
    data_dir: str | os.PathLike[str],
    log_dir: str | os.PathLike[str],
    port: int = 27017,
    replica_set_name: str = "",
    template: Optional[str] = None,
) -> str:
    """Return the configuration document for the given settings.

    *template* is used verbatim when provided.  The result only depends on
    the arguments which makes repeated runs byte-identical.
    """

    if template is None:
        text = DEFAULT_TEMPLATE.format(
            data_dir=data_dir,
            log_path=Path(log_dir) / "mongod.log",
            port=port,
        )
    else:
        text = template

    if replica_set_name and not has_replication_section(text):
        if not text.endswith("\n"):
            text += "\n"
        text += REPLICATION_TEMPLATE.format(replica_set_name=replica_set_name)

    return text


def read_template(config_dir: str | os.PathLike[str]) -> Optional[str]:
    """Return the template content from *config_dir* or *None* when absent.

    Line endings are kept as-is and bytes that are not valid UTF-8 are
    carried as surrogates so that :func:`encode_config` restores them.
    """

    path = Path(config_dir) / TEMPLATE_FILE_NAME
    if not path.is_file():
        return None
    return path.read_bytes().decode(ENCODING, ENCODING_ERRORS)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def write_config(path: Path, content: str, uid: int, gid: int) -> bool:
    """Atomically write *content* to *path* with mode 0640 owned by *uid:gid*.

    Returns *False* when the ownership change was refused (rootless
    containers, some network volumes); the file itself is always written,
    any other ``OSError`` propagates.
    """

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(encode_config(content))
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_path, CONFIG_FILE_MODE)
        os.replace(tmp_path, path)
    finally:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass

    try:
        os.chown(path, uid, gid)
    except OSError as exc:
        _log(f"WARNING: could not change ownership of {path} to {uid}:{gid} ({exc})")
        return False
    return True


def generate_config(
    config_dir: str | os.PathLike[str],
    data_dir: str | os.PathLike[str],
    log_dir: str | os.PathLike[str],
    port: int = 27017,
    replica_set_name: str = "",
    uid: int = 1001,
    gid: int = 0,
) -> Path:
    """Render and write ``mongod.conf`` inside *config_dir*.

    Returns:
        Path: Location of the generated file.
    """

    config_dir = Path(config_dir)
    config_file = config_dir / CONFIG_FILE_NAME

    _log("Generating MongoDB configuration...")
    template = read_template(config_dir)
    if template is not None:
        _log(f"Using template {config_dir / TEMPLATE_FILE_NAME}")

    content = render_config(data_dir, log_dir, port, replica_set_name, template)
    write_config(config_file, content, uid, gid)

    _log(f"MongoDB configuration generated at {config_file}")
    return config_file


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""

    parser = argparse.ArgumentParser(description="Generate mongod.conf from the environment.")
    parser.add_argument(
        "--print",
        dest="print_only",
        action="store_true",
        help="Print the rendered document instead of writing it",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    """Render the configuration using the same environment as the entrypoint."""

    args = parse_arguments(argv)

    config_dir = os.getenv("MONGODB_CONFIG_DIR", "/etc/mongodb")
    data_dir = os.getenv("MONGODB_DATA_DIR", "/data/db")
    log_dir = os.getenv("MONGODB_LOG_DIR", "/var/log/mongodb")
    replica_set_name = os.getenv("REPLICA_SET_NAME", "rs0")
    try:
        port = int(os.getenv("MONGODB_PORT", "27017"))
        uid = int(os.getenv("MONGODB_UID", "1001"))
        gid = int(os.getenv("MONGODB_GID", "0"))
    except ValueError as exc:
        _log(f"ERROR: invalid numeric setting: {exc}")
        sys.exit(1)

    if args.print_only:
        content = render_config(data_dir, log_dir, port, replica_set_name, read_template(config_dir))
        sys.stdout.buffer.write(encode_config(content))
        sys.stdout.flush()
        return

    try:
        generate_config(config_dir, data_dir, log_dir, port, replica_set_name, uid, gid)
    except OSError as exc:
        _log(f"ERROR: could not write configuration: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
