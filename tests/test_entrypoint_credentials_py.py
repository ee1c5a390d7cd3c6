"""Tests for *file_env*, fresh-install detection and credential staging."""

from __future__ import annotations

import pytest

import entrypoint as ep


# ---------------------------------------------------------------------------
#  file_env
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "direct, file_ref",
    [("admin", "/run/secrets/user"), ("x", "/does/not/exist"), ("a", "b")],
)
def test_file_env_both_set_is_fatal(direct, file_ref):
    env = {"MONGO_INITDB_ROOT_USERNAME": direct, "MONGO_INITDB_ROOT_USERNAME_FILE": file_ref}

    with pytest.raises(ep.FatalSetupError, match="exclusive"):
        ep.file_env("MONGO_INITDB_ROOT_USERNAME", env)


def test_file_env_reads_trimmed_file(tmp_path):
    secret = tmp_path / "password"
    secret.write_text("s3cr3t\n", encoding="utf-8")

    env = {"MONGO_INITDB_ROOT_PASSWORD_FILE": str(secret)}
    assert ep.file_env("MONGO_INITDB_ROOT_PASSWORD", env) == "s3cr3t"


def test_file_env_missing_file_is_fatal(tmp_path):
    env = {"MONGO_INITDB_ROOT_PASSWORD_FILE": str(tmp_path / "absent")}

    with pytest.raises(ep.FatalSetupError, match="does not exist"):
        ep.file_env("MONGO_INITDB_ROOT_PASSWORD", env)


def test_file_env_direct_value_and_default():
    assert ep.file_env("MONGO_INITDB_DATABASE", {"MONGO_INITDB_DATABASE": "app"}) == "app"
    assert ep.file_env("MONGO_INITDB_DATABASE", {}, default="admin") == "admin"
    assert ep.file_env("MONGO_INITDB_DATABASE", {}) == ""


# ---------------------------------------------------------------------------
#  is_fresh_install / initialise_mongodb
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("marker", ["WiredTiger", "mongod.lock"])
def test_existing_data_skips_credential_resolution(tmp_path, marker):
    (tmp_path / marker).write_text("", encoding="utf-8")
    config = ep.gather_env({"MONGODB_DATA_DIR": str(tmp_path)})

    # Conflicting variables would be fatal if they were looked at.
    env = {
        "MONGO_INITDB_ROOT_USERNAME": "admin",
        "MONGO_INITDB_ROOT_USERNAME_FILE": "/run/secrets/user",
    }

    assert ep.is_fresh_install(tmp_path) is False
    assert ep.initialise_mongodb(config, env) is None


def test_fresh_install_stages_root_user(tmp_path):
    config = ep.gather_env({"MONGODB_DATA_DIR": str(tmp_path)})
    env = {"MONGO_INITDB_ROOT_USERNAME": "admin", "MONGO_INITDB_ROOT_PASSWORD": "secret"}

    credentials = ep.initialise_mongodb(config, env)

    assert credentials is not None
    assert credentials.has_root_user
    assert credentials.exports() == {
        "MONGO_INITDB_ROOT_USERNAME": "admin",
        "MONGO_INITDB_ROOT_PASSWORD": "secret",
        "MONGO_INITDB_DATABASE": "admin",
    }


def test_fresh_install_conflict_is_fatal(tmp_path):
    config = ep.gather_env({"MONGODB_DATA_DIR": str(tmp_path)})
    env = {
        "MONGO_INITDB_ROOT_PASSWORD": "secret",
        "MONGO_INITDB_ROOT_PASSWORD_FILE": "/run/secrets/pw",
    }

    with pytest.raises(ep.FatalSetupError):
        ep.initialise_mongodb(config, env)


def test_partial_credentials_do_not_default_database():
    credentials = ep.CredentialSet(username="admin")

    assert not credentials.has_root_user
    assert credentials.exports() == {"MONGO_INITDB_ROOT_USERNAME": "admin"}


# ---------------------------------------------------------------------------
#  build_launch_environ
# ---------------------------------------------------------------------------


def test_launch_environ_replaces_file_references(tmp_path):
    secret = tmp_path / "pw"
    secret.write_text("fromfile\n", encoding="utf-8")
    env = {
        "PATH": "/usr/bin",
        "MONGO_INITDB_ROOT_USERNAME": "admin",
        "MONGO_INITDB_ROOT_PASSWORD_FILE": str(secret),
    }

    credentials = ep.resolve_credentials(env)
    launch = ep.build_launch_environ(env, credentials)

    assert "MONGO_INITDB_ROOT_PASSWORD_FILE" not in launch
    assert launch["MONGO_INITDB_ROOT_PASSWORD"] == "fromfile"
    assert launch["MONGO_INITDB_DATABASE"] == "admin"
    assert launch["PATH"] == "/usr/bin"
    # The input mapping itself is left untouched.
    assert "MONGO_INITDB_ROOT_PASSWORD_FILE" in env


def test_launch_environ_without_credentials_is_a_copy():
    env = {"MONGO_INITDB_ROOT_PASSWORD_FILE": "/run/secrets/pw"}

    launch = ep.build_launch_environ(env, None)

    assert launch == env
    assert launch is not env
