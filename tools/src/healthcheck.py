#!/usr/bin/env python3
"""
healthcheck.py - Liveness, readiness and startup probes for the MongoDB container.

Usage: ``healthcheck [liveness|live|readiness|ready|startup]``

The invocation mode selects a probe plan:

* ``liveness`` / ``live``  - basic plan (process + connectivity).
* ``startup``              - basic plan with 10 attempts of 30 seconds each
                             so that slow cold starts are not killed.
* ``readiness`` / ``ready`` or anything else - full plan (all six checks).

Every check of the selected plan runs even after an earlier failure so that
the log carries the complete diagnosis.  The exit code is 0 only when all of
them passed.
"""

from __future__ import annotations

import os
import signal
import sys
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import FrameType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import psutil
import pymongo
from pymongo.errors import OperationFailure, PyMongoError

from tools.src.mongod_admin import create_client, find_mongod_processes

# Default constants
DEFAULT_TIMEOUT: float = 10.0
DEFAULT_RETRIES: int = 3
STARTUP_TIMEOUT: float = 30.0
STARTUP_RETRIES: int = 10
RETRY_INTERVAL_SECONDS: float = 1.0
DEFAULT_MIN_FREE_DISK_PERCENT: float = 10.0
HEALTHCHECK_COLLECTION: str = "healthcheck"

# replSetGetStatus error codes meaning "standalone" / "not initiated yet"
NO_REPLICATION_ENABLED: int = 76
NOT_YET_INITIALIZED: int = 94

MEMBER_STATE_PRIMARY: int = 1
MEMBER_STATE_SECONDARY: int = 2


def _log(message: str) -> None:
    """Print *message* to stderr with the healthcheck prefix."""

    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] HEALTHCHECK: {message}", file=sys.stderr)


@dataclass(frozen=True)
class HealthSettings:
    """Connection and threshold settings shared by every check."""

    host: str = "localhost"
    port: int = 27017
    database: str = "admin"
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    data_dir: str = "/data/db"
    log_dir: str = "/var/log/mongodb"
    min_free_percent: float = DEFAULT_MIN_FREE_DISK_PERCENT

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "HealthSettings":
        """Build the settings from *env* (defaults to ``os.environ``).

        Malformed numbers fall back to the defaults with a warning; a probe
        must never crash on its own configuration.  A non-positive timeout
        would disable the driver deadlines and falls back to the default;
        fewer than one retry is raised to a single attempt.
        """
        src = os.environ if env is None else env

        def _number(key: str, default, cast):
            raw = src.get(key, "")
            if not raw:
                return default
            try:
                return cast(raw)
            except ValueError:
                _log(f"WARNING: ignoring invalid {key}={raw!r}, using {default}")
                return default

        timeout = _number("HEALTH_CHECK_TIMEOUT", DEFAULT_TIMEOUT, float)
        if timeout <= 0:
            _log(f"WARNING: HEALTH_CHECK_TIMEOUT must be positive, using {DEFAULT_TIMEOUT}")
            timeout = DEFAULT_TIMEOUT

        retries = _number("HEALTH_CHECK_RETRIES", DEFAULT_RETRIES, int)
        if retries < 1:
            _log(f"WARNING: HEALTH_CHECK_RETRIES={retries} is below 1, making a single attempt")
            retries = 1

        return cls(
            host=src.get("MONGODB_HOST") or "localhost",
            port=_number("MONGODB_PORT", 27017, int),
            database=src.get("MONGODB_DATABASE") or "admin",
            timeout=timeout,
            retries=retries,
            data_dir=src.get("MONGODB_DATA_DIR") or "/data/db",
            log_dir=src.get("MONGODB_LOG_DIR") or "/var/log/mongodb",
            min_free_percent=_number("MIN_FREE_DISK_PERCENT", DEFAULT_MIN_FREE_DISK_PERCENT, float),
        )


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of a single check."""

    name: str
    passed: bool
    message: str


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_process_health(settings: HealthSettings) -> ProbeOutcome:
    """The server process exists and is not stuck in uninterruptible sleep."""

    name = "process-liveness"
    processes = find_mongod_processes()
    if not processes:
        return ProbeOutcome(name, False, "MongoDB process not found")

    proc = processes[0]
    try:
        state = proc.status()
    except psutil.NoSuchProcess:
        return ProbeOutcome(name, False, f"MongoDB process {proc.pid} exited during the check")
    except psutil.AccessDenied as e:
        return ProbeOutcome(name, True, f"MongoDB process {proc.pid} found (state unreadable: {e})")

    if state == psutil.STATUS_DISK_SLEEP:
        return ProbeOutcome(name, False, f"MongoDB process {proc.pid} is in uninterruptible sleep state")
    return ProbeOutcome(name, True, f"MongoDB process {proc.pid} is running (state: {state})")


def check_connection(settings: HealthSettings) -> ProbeOutcome:
    """``ping`` succeeds within the timeout, retried up to the retry budget."""

    name = "connectivity"
    last_error = ""
    for attempt in range(1, settings.retries + 1):
        client = create_client(settings.host, settings.port, settings.timeout)
        try:
            with pymongo.timeout(settings.timeout):
                client.admin.command("ping")
            return ProbeOutcome(name, True, f"Connected to {settings.host}:{settings.port}")
        except PyMongoError as e:
            last_error = str(e)
        finally:
            client.close()
        if attempt < settings.retries:
            _log(f"Connection attempt {attempt} failed, retrying...")
            time.sleep(RETRY_INTERVAL_SECONDS)
    return ProbeOutcome(
        name,
        False,
        f"Could not connect to {settings.host}:{settings.port} after {settings.retries} attempts: {last_error}",
    )


def check_server_status(settings: HealthSettings) -> ProbeOutcome:
    """``serverStatus`` reports ``ok: 1``."""

    name = "server-status"
    client = create_client(settings.host, settings.port, settings.timeout)
    try:
        with pymongo.timeout(settings.timeout):
            status = client.admin.command("serverStatus")
    except PyMongoError as e:
        return ProbeOutcome(name, False, f"ERROR: {e}")
    finally:
        client.close()

    if status.get("ok") == 1:
        return ProbeOutcome(name, True, "Server status OK")
    return ProbeOutcome(name, False, "ERROR: Server status not OK")


def check_readiness(settings: HealthSettings) -> ProbeOutcome:
    """Insert, read back and delete a scratch document.

    The three operations share one deadline of ``settings.timeout``.
    """

    name = "read-write-capability"
    client = create_client(settings.host, settings.port, settings.timeout)
    try:
        with pymongo.timeout(settings.timeout):
            collection = client[settings.database][HEALTHCHECK_COLLECTION]
            collection.insert_one({"timestamp": datetime.now(timezone.utc), "check": "readiness"})
            found = collection.find_one({"check": "readiness"})
            collection.delete_many({"check": "readiness"})
    except PyMongoError as e:
        return ProbeOutcome(name, False, f"NOT_READY: {e}")
    finally:
        client.close()

    if found is None:
        return ProbeOutcome(name, False, "NOT_READY: written document could not be read back")
    return ProbeOutcome(name, True, "READY")


def check_replica_set(settings: HealthSettings) -> ProbeOutcome:
    """This member is PRIMARY or SECONDARY; standalone servers pass."""

    name = "replica-set-membership"
    client = create_client(settings.host, settings.port, settings.timeout)
    try:
        with pymongo.timeout(settings.timeout):
            status = client.admin.command("replSetGetStatus")
    except OperationFailure as e:
        if e.code in (NO_REPLICATION_ENABLED, NOT_YET_INITIALIZED):
            return ProbeOutcome(name, True, "Replica set not configured (standalone mode)")
        return ProbeOutcome(name, False, f"RS_ERROR: {e}")
    except PyMongoError as e:
        return ProbeOutcome(name, False, f"RS_ERROR: {e}")
    finally:
        client.close()

    if status.get("ok") != 1:
        return ProbeOutcome(name, False, f"RS_ERROR: {status.get('errmsg', 'status not OK')}")

    me = next((m for m in status.get("members", []) if m.get("self")), None)
    state = me.get("state") if me else None
    if state in (MEMBER_STATE_PRIMARY, MEMBER_STATE_SECONDARY):
        return ProbeOutcome(name, True, f"Replica set status: OK ({me.get('stateStr', state)})")
    return ProbeOutcome(name, False, f"RS_NOT_READY: State {state if state is not None else 'unknown'}")


def check_disk_space(settings: HealthSettings) -> ProbeOutcome:
    """Data and log volumes keep at least the configured free percentage."""

    name = "disk-capacity"
    report: List[str] = []
    for directory in (settings.data_dir, settings.log_dir):
        if not os.path.isdir(directory):
            continue
        try:
            usage = psutil.disk_usage(directory)
        except OSError as e:
            return ProbeOutcome(name, False, f"Cannot read disk usage of {directory}: {e}")
        free_percent = 100.0 - usage.percent
        if free_percent < settings.min_free_percent:
            return ProbeOutcome(
                name,
                False,
                f"Disk space warning: {directory} has only {free_percent:.1f}% free "
                f"(minimum: {settings.min_free_percent:g}%)",
            )
        report.append(f"{directory} {free_percent:.1f}% free")
    return ProbeOutcome(name, True, ", ".join(report) or "No directories to check")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

Check = Callable[[HealthSettings], ProbeOutcome]
PlanStep = Tuple[str, Check]

# Process first: a missing process explains the connection failures below it.
BASIC_PLAN: Tuple[PlanStep, ...] = (
    ("process-liveness", check_process_health),
    ("connectivity", check_connection),
)
FULL_PLAN: Tuple[PlanStep, ...] = BASIC_PLAN + (
    ("server-status", check_server_status),
    ("read-write-capability", check_readiness),
    ("replica-set-membership", check_replica_set),
    ("disk-capacity", check_disk_space),
)

PLANS: Dict[str, Tuple[PlanStep, ...]] = {"basic": BASIC_PLAN, "full": FULL_PLAN}


def resolve_mode(
    mode: Optional[str], settings: Optional[HealthSettings] = None
) -> Tuple[str, HealthSettings]:
    """Map an invocation *mode* to a plan name and the effective settings."""

    if settings is None:
        settings = HealthSettings.from_env()

    if mode in ("liveness", "live"):
        return "basic", settings
    if mode == "startup":
        return "basic", replace(settings, retries=STARTUP_RETRIES, timeout=STARTUP_TIMEOUT)
    return "full", settings


def run_plan(plan: Sequence[PlanStep], settings: HealthSettings) -> List[ProbeOutcome]:
    """Run every check of *plan* and log one line per outcome.

    An unexpected exception inside a check is turned into a failed outcome
    so that the remaining checks still run.
    """
    outcomes: List[ProbeOutcome] = []
    for name, check in plan:
        try:
            outcome = check(settings)
        except Exception as e:
            outcome = ProbeOutcome(name, False, f"unexpected error: {e}")
        if outcome.passed:
            _log(f"{outcome.name}: {outcome.message}")
        else:
            _log(f"{outcome.name} check failed: {outcome.message}")
        outcomes.append(outcome)
    return outcomes


def run(mode: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> int:
    """Evaluate the probe for *mode* and return the exit code."""

    plan_name, settings = resolve_mode(mode, HealthSettings.from_env(env))
    _log(f"Starting health check (type: {plan_name})")

    outcomes = run_plan(PLANS[plan_name], settings)
    if all(outcome.passed for outcome in outcomes):
        _log("Health check passed")
        return 0
    _log("Health check failed")
    return 1


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """An interrupted probe counts as failed."""

    _log(f"Received signal {signum}, exiting.")
    sys.exit(1)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main function to execute the probe selected on the command line."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = list(sys.argv[1:] if argv is None else argv)
    sys.exit(run(args[0] if args else None))


if __name__ == "__main__":
    main()
