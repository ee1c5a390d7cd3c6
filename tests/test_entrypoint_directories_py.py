"""Tests for *prepare_directories*, *generate_config* and *wait_for_network*."""

from __future__ import annotations

import subprocess
import threading

import pytest

import entrypoint as ep
import entrypoint.entrypoint as impl


def test_creates_directories_and_fixes_permissions(runtime_env, recorded_runs, tmp_path):
    config = ep.gather_env(runtime_env)

    result = ep.prepare_directories(config)

    assert result.degraded is False
    for name in ("data", "log", "config", "scratch"):
        assert (tmp_path / name).is_dir()

    chown, chmod_group, chmod_other = recorded_runs
    assert chown[:3] == ["chown", "-R", "1001:0"]
    assert str(tmp_path / "scratch") in chown
    assert chmod_group[:3] == ["chmod", "-R", "g+rwx"]
    assert str(tmp_path / "scratch") in chmod_group
    # The scratch directory keeps its *other* bits.
    assert chmod_other[:3] == ["chmod", "-R", "o-rwx"]
    assert str(tmp_path / "scratch") not in chmod_other
    assert str(tmp_path / "data") in chmod_other


def test_second_run_is_idempotent(runtime_env, recorded_runs, capsys):
    config = ep.gather_env(runtime_env)

    first = ep.prepare_directories(config)
    capsys.readouterr()
    second = ep.prepare_directories(config)

    assert first == second
    assert "Created directory" not in capsys.readouterr().err
    assert recorded_runs[:3] == recorded_runs[3:]


def test_permission_failure_is_tolerated(runtime_env, monkeypatch, tmp_path):
    def _refuse(cmd, **kwargs):  # noqa: D401 – nested helper
        raise subprocess.CalledProcessError(1, cmd, stderr="Operation not permitted")

    monkeypatch.setattr(subprocess, "run", _refuse)
    config = ep.gather_env(runtime_env)

    result = ep.prepare_directories(config)

    assert result.degraded is True
    assert "Operation not permitted" in result.detail
    assert (tmp_path / "data").is_dir()


def test_missing_chown_binary_is_tolerated(runtime_env, monkeypatch):
    def _missing(cmd, **kwargs):  # noqa: D401 – nested helper
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", _missing)

    assert ep.prepare_directories(ep.gather_env(runtime_env)).degraded is True


def test_directory_creation_failure_is_fatal(runtime_env, recorded_runs, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    runtime_env["MONGODB_DATA_DIR"] = str(blocker / "data")

    with pytest.raises(ep.FatalSetupError, match="cannot create directory"):
        ep.prepare_directories(ep.gather_env(runtime_env))


# ---------------------------------------------------------------------------
#  wait_for_network
# ---------------------------------------------------------------------------


def test_wait_for_network_port_free(monkeypatch):
    from tools.src import wait_for_port

    monkeypatch.setattr(wait_for_port, "port_in_use", lambda port: False)

    result = ep.wait_for_network(ep.gather_env({}), attempts=3, sleep_seconds=0)
    assert result.degraded is False


def test_wait_for_network_port_busy_is_degraded(monkeypatch):
    from tools.src import wait_for_port

    polled: list[int] = []

    def _busy(port):  # noqa: D401 – nested helper
        polled.append(port)
        return True

    monkeypatch.setattr(wait_for_port, "port_in_use", _busy)

    result = ep.wait_for_network(
        ep.gather_env({"MONGODB_PORT": "27018"}), attempts=3, sleep_seconds=0, cancel=threading.Event()
    )

    assert result.degraded is True
    assert "27018" in result.detail
    assert set(polled) == {27018}
    assert len(polled) >= 3


def test_wait_for_network_honours_cancellation(monkeypatch):
    from tools.src import wait_for_port

    monkeypatch.setattr(wait_for_port, "port_in_use", lambda port: True)
    cancel = threading.Event()
    cancel.set()

    result = ep.wait_for_network(ep.gather_env({}), attempts=30, sleep_seconds=10, cancel=cancel)

    assert result.degraded is True


def test_wait_for_network_defaults_to_shutdown_event(monkeypatch):
    from tools.src import wait_for_port

    seen = {}

    def _fake_wait(port, max_attempts, sleep_seconds, cancel):  # noqa: D401 – nested helper
        seen.update(port=port, attempts=max_attempts, sleep=sleep_seconds, cancel=cancel)
        return True

    monkeypatch.setattr(wait_for_port, "wait_for_port_free", _fake_wait)

    ep.wait_for_network(ep.gather_env({}))

    assert seen == {"port": 27017, "attempts": 30, "sleep": 1.0, "cancel": impl.SHUTDOWN_REQUESTED}


def test_generate_config_keeps_non_utf8_template(runtime_env, monkeypatch, tmp_path):
    monkeypatch.setattr("os.chown", lambda *args: None)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    template = b"# caf\xe9\r\nstorage:\r\n  dbPath: /x\r\nreplication:\r\n  replSetName: a\r\n"
    (config_dir / "mongod.conf.template").write_bytes(template)
    config = ep.gather_env(runtime_env)

    path = impl.generate_config(config)

    assert path == config.config_file
    assert path.read_bytes() == template
