"""Pytest configuration - shared fixtures for the entry-point test-suite.

The project root is added to ``sys.path`` once so that ``import entrypoint``
and ``import tools.src...`` work even when the suite runs from an
uninstalled checkout.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:  # noqa: D401 – Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parent.parent))
    if str(root) not in sys.path:  # pragma: no cover – executed once
        sys.path.insert(0, str(root))


@pytest.fixture()
def runtime_env(tmp_path, monkeypatch):
    """Environment mapping pointing every runtime directory into *tmp_path*.

    The scratch directory constant is redirected as well so that no test
    ever touches ``/tmp/mongodb`` on the host.
    """

    import entrypoint.entrypoint as impl

    monkeypatch.setattr(impl, "SCRATCH_DIR", tmp_path / "scratch")
    return {
        "MONGODB_DATA_DIR": str(tmp_path / "data"),
        "MONGODB_LOG_DIR": str(tmp_path / "log"),
        "MONGODB_CONFIG_DIR": str(tmp_path / "config"),
        "MONGODB_UID": "1001",
        "MONGODB_GID": "0",
    }


@pytest.fixture()
def recorded_runs(monkeypatch):
    """Replace *subprocess.run* with a recorder that always succeeds."""

    import subprocess

    calls: list[list[str]] = []

    def _fake_run(cmd, **kwargs):  # noqa: D401 – nested helper
        calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", _fake_run)
    return calls
