#!/usr/bin/env python3
"""MongoDB Docker image - **Python entry-point for Kubernetes**
======================================================================

This module brings ``mongod`` up inside an orchestrated container and hands
the process over to it.  It replaces the historical ``ps-entry.sh`` shell
script and keeps its observable behaviour: the same environment variables,
the same generated ``mongod.conf`` and the same final command line.

Start-up sequence
-----------------

```
Step | Concern                          | Python helper
-----+----------------------------------+----------------------------
1    | Command classification           | is_mongodb_command
2    | Directory / permission setup     | prepare_directories
3    | Port still held by old instance  | wait_for_network
4    | mongod.conf materialisation      | generate_config
5    | Fresh volume / credential stage  | initialise_mongodb, file_env
6    | Final command assembly           | build_mongod_command
7    | Privilege drop + exec            | drop_privileges, start_mongodb
-    | SIGTERM / SIGINT / SIGQUIT       | shutdown_handler
```

Configuration is read **once** into an immutable :class:`RuntimeConfig`.
Nothing in the pipeline mutates ``os.environ``: the resolved credentials are
only serialised into the environment block of the exec'd process by
:pyfunc:`build_launch_environ`.

Errors fall in two buckets.  *Fatal* ones raise :class:`FatalSetupError` and
make :pyfunc:`main` exit with status 1.  *Tolerated* ones (``chown`` refused
by a network volume, port still busy after the wait) are logged as warnings
and reported through a :class:`StepResult` flagged ``degraded``; the
sequence carries on.

Signal hand-off
---------------

The shutdown handler only exists while this Python process does.  Once
``os.execvpe`` succeeds the kernel resets every caught signal to its default
disposition and ``mongod`` becomes the sole receiver of ``SIGTERM`` - no
supervisor thread is ever started, so nothing of the entry-point survives
the exec.
"""

from __future__ import annotations

import os
import signal
import sys
import threading
import time
from dataclasses import dataclass
from os import environ
from pathlib import Path
from types import FrameType
from typing import Mapping, MutableMapping, Sequence

__all__ = [
    "FatalSetupError",
    "StepResult",
    "RuntimeConfig",
    "CredentialSet",
    "MONGODB_COMMANDS",
    "SCRATCH_DIR",
    "STORAGE_MARKER_FILE",
    "LOCK_FILE",
    "CREDENTIAL_VARIABLES",
    "SHUTDOWN_REQUESTED",
    "gather_env",
    "is_mongodb_command",
    "option_in_args",
    "prepare_directories",
    "wait_for_network",
    "generate_config",
    "is_fresh_install",
    "file_env",
    "resolve_credentials",
    "initialise_mongodb",
    "build_launch_environ",
    "numa_available",
    "build_mongod_command",
    "drop_privileges",
    "start_mongodb",
    "graceful_shutdown",
    "shutdown_handler",
    "install_signal_handlers",
    "main",
]


# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

# Binaries of the MongoDB ecosystem that trigger the full start-up pipeline.
MONGODB_COMMANDS = frozenset({"mongod", "mongos", "mongo", "mongosh"})

DEFAULT_COMMAND = "mongod"

# Scratch directory prepared alongside the persistent ones.  Module level so
# that tests can redirect it to a temporary location.
SCRATCH_DIR = Path("/tmp/mongodb")

# Presence of either file means the volume already holds a database.
STORAGE_MARKER_FILE = "WiredTiger"
LOCK_FILE = "mongod.lock"

CREDENTIAL_VARIABLES = (
    "MONGO_INITDB_ROOT_USERNAME",
    "MONGO_INITDB_ROOT_PASSWORD",
    "MONGO_INITDB_DATABASE",
)

NETWORK_WAIT_ATTEMPTS = 30
NETWORK_WAIT_SECONDS = 1.0

SHUTDOWN_WAIT_ATTEMPTS = 30
SHUTDOWN_WAIT_SECONDS = 1.0

# Set by the signal handler; every bounded wait of the pipeline watches it.
SHUTDOWN_REQUESTED = threading.Event()


# ---------------------------------------------------------------------------
#  Logging & result types
# ---------------------------------------------------------------------------


def _log(message: str) -> None:
    """Write a timestamped diagnostic line to stderr."""

    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] ENTRYPOINT: {message}", file=sys.stderr)


class FatalSetupError(RuntimeError):
    """Unrecoverable configuration problem - the container must not start."""


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of a best-effort step.

    ``degraded`` is *True* when the step hit a tolerated fault and the
    pipeline proceeded anyway; ``detail`` carries the warning text.
    """

    step: str
    degraded: bool = False
    detail: str = ""


# ---------------------------------------------------------------------------
#  Runtime configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Immutable view of the environment used by the entry-point.

    Built by :pyfunc:`gather_env` and passed explicitly to every step.  The
    Kubernetes labels are advisory and only ever end up in log lines.
    """

    data_dir: Path
    log_dir: Path
    config_dir: Path
    user: str
    uid: int
    gid: int
    port: int
    replica_set_name: str
    namespace: str = ""
    pod_name: str = ""
    service_name: str = ""

    @property
    def config_file(self) -> Path:
        return self.config_dir / "mongod.conf"

    @property
    def log_file(self) -> Path:
        return self.log_dir / "mongod.log"


def gather_env(env: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Return the :class:`RuntimeConfig` for *env* (defaults to ``os.environ``).

    Unknown keys are ignored so callers may pass ``os.environ`` directly.
    Non-numeric ``MONGODB_UID`` / ``MONGODB_GID`` / ``MONGODB_PORT`` values
    are fatal: guessing an owner for the data volume is worse than refusing
    to start.
    """

    src = environ if env is None else env

    def _get(key: str, default: str = "") -> str:
        return str(src.get(key, default))

    def _int(key: str, default: str) -> int:
        raw = _get(key, default)
        try:
            return int(raw)
        except ValueError as exc:
            raise FatalSetupError(f"{key} must be an integer, got {raw!r}") from exc

    return RuntimeConfig(
        data_dir=Path(_get("MONGODB_DATA_DIR", "/data/db")),
        log_dir=Path(_get("MONGODB_LOG_DIR", "/var/log/mongodb")),
        config_dir=Path(_get("MONGODB_CONFIG_DIR", "/etc/mongodb")),
        user=_get("MONGODB_USER", "mongodb"),
        uid=_int("MONGODB_UID", "1001"),
        gid=_int("MONGODB_GID", "0"),
        port=_int("MONGODB_PORT", "27017"),
        replica_set_name=_get("REPLICA_SET_NAME", "rs0"),
        namespace=_get("K8S_NAMESPACE"),
        pod_name=_get("K8S_POD_NAME"),
        service_name=_get("K8S_SERVICE_NAME"),
    )


# ---------------------------------------------------------------------------
#  1. Command classification
# ---------------------------------------------------------------------------


def is_mongodb_command(argv: Sequence[str] | None = None) -> bool:  # noqa: D401 - imperative mood
    """Return *True* when *argv* should run the full start-up pipeline.

    An empty vector means the image default (``mongod``).  A first token
    starting with ``-`` is a bare server flag (``docker run image
    --replSet rs1``) and is treated as a server launch as well; the command
    builder prepends ``mongod`` in that case.  This differs from the shell
    entrypoint of the upstream image, which only recognised the four
    MongoDB binaries and ran a leading flag as a custom command.
    Everything else is an operator override executed verbatim.
    """

    argv = list(sys.argv[1:] if argv is None else argv)
    first = argv[0] if argv else DEFAULT_COMMAND
    if first.startswith("-"):
        return True
    return first in MONGODB_COMMANDS


def option_in_args(option: str, *args: str) -> bool:
    """Return *True* when *option* is present in *args*.

    Both ``--logpath /x`` and the inline ``--logpath=/x`` syntax count.
    """

    if not option.startswith("--"):
        raise ValueError("expected a long option starting with '--'")

    for arg in args:
        if arg == option or arg.startswith(option + "="):
            return True
    return False


# ---------------------------------------------------------------------------
#  2. Directories & permissions
# ---------------------------------------------------------------------------


def _run_permission_command(cmd: list[str]) -> str:
    """Run *cmd* and return an error description, empty on success."""

    import subprocess

    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        return f"{' '.join(cmd)} failed: {(exc.stderr or '').strip() or exc.returncode}"
    except OSError as exc:
        return f"{' '.join(cmd)} failed: {exc}"
    return ""


def prepare_directories(config: RuntimeConfig) -> StepResult:  # noqa: D401 - imperative mood
    """Create the runtime directories and hand them to ``UID:GID``.

    Directory *creation* failing is fatal because mongod cannot run without
    them.  Ownership and mode changes are best-effort: some network volumes
    and rootless runtimes refuse ``chown`` and the server may still be able
    to write there, so those failures only degrade the step.

    The persistent directories additionally lose every *other* permission
    bit.  Running the helper twice yields the same state and creates
    nothing the second time.
    """

    scratch = Path(SCRATCH_DIR)
    persistent = [config.data_dir, config.log_dir, config.config_dir]
    all_dirs = [*persistent, scratch]

    _log("Setting up directories and permissions...")

    for directory in all_dirs:
        if directory.is_dir():
            continue
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalSetupError(f"cannot create directory {directory}: {exc}") from exc
        _log(f"Created directory: {directory}")

    owner = f"{config.uid}:{config.gid}"
    problems = [
        msg
        for msg in (
            _run_permission_command(["chown", "-R", owner, *map(str, all_dirs)]),
            _run_permission_command(["chmod", "-R", "g+rwx", *map(str, all_dirs)]),
            _run_permission_command(["chmod", "-R", "o-rwx", *map(str, persistent)]),
        )
        if msg
    ]

    if problems:
        detail = "; ".join(problems)
        _log(f"WARNING: could not fully adjust permissions ({detail})")
        return StepResult("prepare_directories", degraded=True, detail=detail)
    return StepResult("prepare_directories")


# ---------------------------------------------------------------------------
#  3. Network readiness
# ---------------------------------------------------------------------------


def wait_for_network(
    config: RuntimeConfig,
    *,
    attempts: int | None = None,
    sleep_seconds: float | None = None,
    cancel: threading.Event | None = None,
) -> StepResult:  # noqa: D401 - imperative mood
    """Wait until no other process listens on the server port.

    Delegates the polling to ``tools.src.wait_for_port``.  The wait is
    bounded and never fatal: when the budget is spent we log a warning and
    let mongod report the bind error itself if the port really is taken.
    """

    from tools.src.wait_for_port import wait_for_port_free

    _log("Waiting for network readiness...")

    free = wait_for_port_free(
        config.port,
        max_attempts=NETWORK_WAIT_ATTEMPTS if attempts is None else attempts,
        sleep_seconds=NETWORK_WAIT_SECONDS if sleep_seconds is None else sleep_seconds,
        cancel=SHUTDOWN_REQUESTED if cancel is None else cancel,
    )
    if free:
        return StepResult("wait_for_network")

    detail = f"Port {config.port} may still be in use"
    _log(f"WARNING: {detail}")
    return StepResult("wait_for_network", degraded=True, detail=detail)


# ---------------------------------------------------------------------------
#  4. Configuration file
# ---------------------------------------------------------------------------


def generate_config(config: RuntimeConfig) -> Path:  # noqa: D401 - imperative mood
    """Write ``mongod.conf`` for *config* and return its path.

    Thin adapter over ``tools.src.mongod_config`` which owns the document
    layout; re-running overwrites the file with identical content.
    """

    from tools.src import mongod_config

    try:
        return mongod_config.generate_config(
            config.config_dir,
            config.data_dir,
            config.log_dir,
            port=config.port,
            replica_set_name=config.replica_set_name,
            uid=config.uid,
            gid=config.gid,
        )
    except OSError as exc:
        raise FatalSetupError(f"cannot write {config.config_file}: {exc}") from exc


# ---------------------------------------------------------------------------
#  5. Fresh-install detection & credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CredentialSet:
    """Root credentials staged for mongod's own first-run bootstrap."""

    username: str = ""
    password: str = ""
    database: str = ""

    @property
    def has_root_user(self) -> bool:
        return bool(self.username and self.password)

    def exports(self) -> dict[str, str]:
        """Return the variables to place in the server environment.

        Resolved values are always exported so that a value read from a
        ``*_FILE`` secret replaces the file reference.  The database only
        defaults to ``admin`` when a complete root user is configured.
        """

        values = dict(zip(CREDENTIAL_VARIABLES, (self.username, self.password, self.database)))
        out = {key: value for key, value in values.items() if value}
        if self.has_root_user:
            out["MONGO_INITDB_DATABASE"] = self.database or "admin"
        return out


def is_fresh_install(data_dir: Path) -> bool:
    """Return *True* when *data_dir* shows no sign of a previous initialisation."""

    data_dir = Path(data_dir)
    return not (data_dir / STORAGE_MARKER_FILE).is_file() and not (data_dir / LOCK_FILE).is_file()


def file_env(var: str, env: Mapping[str, str] | None = None, default: str = "") -> str:
    """Resolve *var* from its direct value or from the file named by ``<var>_FILE``.

    Kubernetes secrets are usually mounted as files; the ``_FILE`` variant
    lets operators point at them instead of exposing the value in the pod
    spec.  Rules:

    * both ``VAR`` and ``VAR_FILE`` set → fatal, they are exclusive;
    * ``VAR_FILE`` only → the file content with trailing newlines removed,
      a missing file is fatal;
    * neither → *default*.
    """

    src = environ if env is None else env
    file_var = f"{var}_FILE"
    direct = src.get(var, "")
    file_ref = src.get(file_var, "")

    if direct and file_ref:
        raise FatalSetupError(f"Both {var} and {file_var} are set (but are exclusive)")

    if direct:
        return direct
    if file_ref:
        path = Path(file_ref)
        if not path.is_file():
            raise FatalSetupError(f"File {file_ref} does not exist")
        try:
            return path.read_text(encoding="utf-8").rstrip("\r\n")
        except OSError as exc:
            raise FatalSetupError(f"cannot read {file_ref}: {exc}") from exc
    return default


def resolve_credentials(env: Mapping[str, str] | None = None) -> CredentialSet:
    """Resolve the three ``MONGO_INITDB_*`` values via :pyfunc:`file_env`."""

    username, password, database = (file_env(var, env) for var in CREDENTIAL_VARIABLES)
    return CredentialSet(username=username, password=password, database=database)


def initialise_mongodb(
    config: RuntimeConfig, env: Mapping[str, str] | None = None
) -> CredentialSet | None:  # noqa: D401
    """Stage first-run credentials when the data volume is empty.

    Returns the resolved :class:`CredentialSet` on a fresh volume and
    *None* when existing data was found - in that case the credential
    variables are not even looked at, so a stale or conflicting secret can
    never break the restart of an initialised database.

    Creating the root user is left to the server image's own bootstrap
    logic; this helper only decides what it will see.
    """

    _log("Checking if MongoDB initialization is needed...")

    if not is_fresh_install(config.data_dir):
        _log("Existing MongoDB data found, skipping initialization")
        return None

    _log("Fresh MongoDB installation detected")
    credentials = resolve_credentials(env)
    if credentials.has_root_user:
        _log("Root user credentials provided, will initialize with authentication")
    return credentials


def build_launch_environ(
    env: Mapping[str, str] | None, credentials: CredentialSet | None
) -> dict[str, str]:
    """Return the environment block for the final process.

    The ``*_FILE`` references of resolved credentials are dropped so the
    secret path does not leak into mongod; the resolved values take their
    place.
    """

    launch = dict(environ if env is None else env)
    if credentials is None:
        return launch

    for var in CREDENTIAL_VARIABLES:
        launch.pop(f"{var}_FILE", None)
    launch.update(credentials.exports())
    return launch


# ---------------------------------------------------------------------------
#  6. Command assembly
# ---------------------------------------------------------------------------


def numa_available() -> bool:
    """Return *True* when ``numactl`` exists and reports a usable topology."""

    import shutil
    import subprocess

    if shutil.which("numactl") is None:
        return False
    try:
        result = subprocess.run(
            ["numactl", "--hardware"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    return result.returncode == 0


def build_mongod_command(argv: Sequence[str], config: RuntimeConfig) -> list[str]:  # noqa: D401
    """Return the final command line for *argv*.

    1. Empty *argv* → ``mongod``; a leading flag gets ``mongod`` prepended.
    2. Kubernetes defaults are appended: ``--config`` (only when the file
       exists), ``--bind_ip_all``, ``--logpath`` and ``--logappend``.  A
       flag the caller already passed is not repeated because mongod
       rejects duplicated options.
    3. With a working ``numactl`` the whole command is wrapped in
       ``numactl --interleave=all``.
    """

    args = list(argv) or [DEFAULT_COMMAND]
    if args[0].startswith("-"):
        args = [DEFAULT_COMMAND, *args]

    extra: list[str] = []

    def _add(option: str, *values: str) -> None:
        if not option_in_args(option, *args):
            extra.extend((option, *values))

    if config.config_file.is_file():
        _add("--config", str(config.config_file))
    _add("--bind_ip_all")
    _add("--logpath", str(config.log_file))
    _add("--logappend")

    if numa_available():
        args = ["numactl", "--interleave=all", *args]

    return [*args, *extra]


# ---------------------------------------------------------------------------
#  7. Privilege drop & exec
# ---------------------------------------------------------------------------


def drop_privileges(uid: int, gid: int, launch_env: MutableMapping[str, str] | None = None) -> None:  # noqa: D401
    """Permanently switch the current process to *uid:gid*.

    Same effect as ``gosu UID:GID``: supplementary groups come from the
    passwd entry when the UID has one (and ``HOME`` follows it), otherwise
    they are reduced to *gid*.  Groups are dropped before the user, the
    only order that works.  No-op when not running as root.
    """

    import pwd

    if os.geteuid() != 0:
        return

    try:
        pw = pwd.getpwuid(uid)
    except KeyError:
        os.setgroups([gid])
    else:
        os.initgroups(pw.pw_name, gid)
        if launch_env is not None:
            launch_env["HOME"] = pw.pw_dir

    os.setgid(gid)
    os.setuid(uid)


def start_mongodb(cmd: Sequence[str], config: RuntimeConfig, launch_env: dict[str, str]) -> None:
    """Replace the current process with *cmd* running as ``UID:GID``.

    When root, the data and log directories are re-owned first (tolerated
    on failure) and privileges are dropped right before the exec.  Nothing
    runs after a successful ``os.execvpe``.
    """

    _log(f"Starting MongoDB with command: {' '.join(cmd)}")

    if os.geteuid() == 0:
        _log(f"Running as root, switching to user {config.user} (UID: {config.uid})")
        for directory in (config.data_dir, config.log_dir):
            try:
                os.chown(directory, config.uid, config.gid)
            except OSError as exc:
                _log(f"WARNING: could not chown {directory} ({exc})")
        drop_privileges(config.uid, config.gid, launch_env)
    else:
        _log(f"Running as UID {os.geteuid()}")

    os.execvpe(cmd[0], list(cmd), launch_env)


# ---------------------------------------------------------------------------
#  Shutdown handling
# ---------------------------------------------------------------------------


def graceful_shutdown(
    attempts: int | None = None, sleep_seconds: float | None = None
) -> None:  # noqa: D401 - imperative mood
    """Stop a running mongod, escalating ``shutdown`` → SIGTERM → SIGKILL.

    Never raises: shutdown is best-effort and whatever happens the caller
    exits 0.  When no server runs yet (signal received before the exec)
    there is nothing to do.
    """

    import psutil

    from tools.src.mongod_admin import find_mongod_processes, shutdown_server

    attempts = SHUTDOWN_WAIT_ATTEMPTS if attempts is None else attempts
    sleep_seconds = SHUTDOWN_WAIT_SECONDS if sleep_seconds is None else sleep_seconds

    if not find_mongod_processes():
        return

    _log("Shutting down MongoDB gracefully...")
    port = int(environ.get("MONGODB_PORT", "27017") or 27017)

    try:
        delivered = shutdown_server(port=port)
    except Exception as exc:  # driver misconfiguration must not block escalation
        _log(f"WARNING: shutdown command raised {exc}")
        delivered = False

    if delivered:
        _log("MongoDB shutdown command sent successfully")
    else:
        _log("MongoDB shutdown command failed, sending SIGTERM to process")
        for proc in find_mongod_processes():
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                _log(f"WARNING: cannot signal process {proc.pid} ({exc})")

    remaining = attempts
    while find_mongod_processes() and remaining > 0:
        time.sleep(sleep_seconds)
        remaining -= 1

    leftovers = find_mongod_processes()
    if not leftovers:
        _log("MongoDB shut down gracefully")
        return

    _log("MongoDB did not shut down gracefully, sending SIGKILL")
    for proc in leftovers:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


def shutdown_handler(signum: int, frame: FrameType | None) -> None:
    """Signal handler: cancel pending waits, stop mongod, exit 0."""

    _log(f"Received shutdown signal {signum}, initiating graceful shutdown...")
    SHUTDOWN_REQUESTED.set()
    try:
        graceful_shutdown()
    except Exception as exc:
        _log(f"WARNING: shutdown routine failed: {exc}")
    sys.exit(0)


def install_signal_handlers() -> None:
    """Route SIGTERM, SIGINT and SIGQUIT to :pyfunc:`shutdown_handler`."""

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT):
        signal.signal(sig, shutdown_handler)


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> None:
    """Run the start-up pipeline and exec the final command.

    The function purposely **never** returns in production: it ends with
    ``os.execvpe`` of either the operator's custom command or the assembled
    mongod command line.  Tests monkey-patch the exec call.
    """

    args = list(sys.argv[1:] if argv is None else argv)

    install_signal_handlers()

    try:
        config = gather_env()

        # --------------------------------------------------------------
        # Custom command fast-path - no initialisation at all.
        # --------------------------------------------------------------

        if not is_mongodb_command(args):
            _log(f"Non-MongoDB command detected: {args[0]}")
            _log("Executing command directly without MongoDB initialization")
            launch_env = dict(environ)
            drop_privileges(config.uid, config.gid, launch_env)
            os.execvpe(args[0], args, launch_env)
            return

        _log("Starting MongoDB entrypoint for Kubernetes...")
        _log(
            f"Pod: {config.pod_name or 'unknown'}, Namespace: {config.namespace or 'unknown'}"
            + (f", Service: {config.service_name}" if config.service_name else "")
        )

        prepare_directories(config)
        wait_for_network(config)
        generate_config(config)
        credentials = initialise_mongodb(config)

        cmd = build_mongod_command(args, config)
        launch_env = build_launch_environ(None, credentials)
        start_mongodb(cmd, config, launch_env)

    except SystemExit:
        raise
    except FatalSetupError as exc:
        _log(f"ERROR: {exc}")
        sys.exit(1)
    except Exception as exc:  # safety net - surface the cause, let k8s restart us
        _log(f"FATAL: {exc}")
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    main()
