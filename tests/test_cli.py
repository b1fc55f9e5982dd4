#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
import yaml
from click.testing import CliRunner

from ldapsync import __version__
from ldapsync.cli import cli
from ldapsync.protocol import ConnectStatus
from ldapsync.sources.base import ConnectResult
from ldapsync.crypto import CredentialCipher
from tests.fake_sources import SECRET_KEY, USER_DN, FakeDirectory, directory_user

DIRECTORY_SETTINGS = {
    "enable_ldap_authentication": True,
    "server": "ldap.example.com",
    "user_dn": USER_DN,
    "login": "cn=admin,dc=example,dc=com",
    "password": "secret",
    "mapping": {
        "FirstNameAttribute": "givenName",
        "SecondNameAttribute": "sn",
        "MailAttribute": "mail",
    },
}


def write_config(tmp_path, directory=None, name="config.yml", secret_key=SECRET_KEY):
    config = {
        "service": {
            "log_level": "error",
            "poll_interval": 0.01,
            "secret_key": secret_key,
        }
    }
    if directory is not None:
        config["directory"] = directory
    path = tmp_path / name
    path.write_text(yaml.safe_dump(config))
    return str(path)


@pytest.fixture
def directory():
    directory = FakeDirectory(users=[directory_user("alice"), directory_user("bob")])
    with patch("ldapsync.cli.source_factory", return_value=directory.source):
        yield directory


def test_help():
    runner = CliRunner()

    result = runner.invoke(cli, [])

    assert result.exit_code == 0
    assert "Usage:" in result.output
    assert "preview" in result.output


def test_version():
    runner = CliRunner()

    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert result.output.strip() == __version__


def test_unparsable_config(tmp_path):
    path = tmp_path / "broken.yml"
    path.write_text("service:\n  log_level: chatty\n")
    runner = CliRunner()

    result = runner.invoke(cli, ["-c", str(path), "preview"])

    assert result.exit_code == 1
    assert f"Could not parse {path}" in result.output


def test_check_ok(tmp_path):
    source = Mock()
    source.bind = AsyncMock(return_value=ConnectResult(ConnectStatus.OK))
    source.close = AsyncMock()
    runner = CliRunner()

    with patch("ldapsync.cli.LdapDirectorySource", return_value=source) as source_class:
        result = runner.invoke(
            cli, ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "check"]
        )

    assert result.exit_code == 0, result.output
    assert "Connection OK." in result.output
    source.close.assert_awaited_once()
    assert source_class.call_args.kwargs["page_size"] == 1000


def test_check_bind_failure(tmp_path):
    source = Mock()
    source.bind = AsyncMock(
        return_value=ConnectResult(ConnectStatus.CREDENTIALS_NOT_VALID)
    )
    source.close = AsyncMock()
    runner = CliRunner()

    with patch("ldapsync.cli.LdapDirectorySource", return_value=source):
        result = runner.invoke(
            cli, ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "check"]
        )

    assert result.exit_code == 1
    assert "credentials_not_valid: Incorrect login or password" in result.output


def test_check_invalid_settings_file(tmp_path):
    settings_file = tmp_path / "settings.yml"
    settings_file.write_text(yaml.safe_dump(dict(DIRECTORY_SETTINGS, server="")))
    runner = CliRunner()

    result = runner.invoke(
        cli, ["-c", write_config(tmp_path), "check", str(settings_file)]
    )

    assert result.exit_code == 1
    assert "server is empty" in result.output


def test_check_disabled(tmp_path):
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["-c", write_config(tmp_path, {"enable_ldap_authentication": False}), "check"],
    )

    assert result.exit_code == 0
    assert "Directory authentication is disabled." in result.output


def test_check_without_settings(tmp_path):
    runner = CliRunner()

    result = runner.invoke(cli, ["-c", write_config(tmp_path), "check"])

    assert result.exit_code == 2
    assert "No directory settings given" in result.output


def test_preview_without_anything(tmp_path):
    runner = CliRunner()

    result = runner.invoke(cli, ["-c", write_config(tmp_path), "preview"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == []


def test_preview(tmp_path, directory):
    state_file = tmp_path / "state.json"
    runner = CliRunner()

    result = runner.invoke(
        cli,
        [
            "-c",
            write_config(tmp_path, DIRECTORY_SETTINGS),
            "preview",
            "-s",
            str(state_file),
        ],
    )

    assert result.exit_code == 0, result.output
    changes = json.loads(result.output)
    assert [(change["kind"], change["name"]) for change in changes] == [
        ("add_user", "Alice Doe"),
        ("add_user", "Bob Doe"),
    ]
    assert not state_file.exists()


def test_preview_table(tmp_path, directory):
    runner = CliRunner()

    result = runner.invoke(
        cli, ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "preview", "--table"]
    )

    assert result.exit_code == 0, result.output
    assert "Change" in result.output
    assert "add_user" in result.output
    assert "Alice Doe" in result.output


def test_preview_error(tmp_path, directory):
    directory.users.clear()
    runner = CliRunner()

    result = runner.invoke(
        cli, ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "preview"]
    )

    assert result.exit_code == 1
    assert "No users found" in result.output


def test_sync_then_preview(tmp_path, directory):
    state_file = str(tmp_path / "state.json")
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "sync", "-s", state_file],
    )

    assert result.exit_code == 0, result.output
    assert f"State saved to {state_file}" in result.output
    with open(state_file) as f:
        state = json.load(f)
    assert sorted(user["sid"] for user in state["local"]["users"]) == [
        "sid-alice",
        "sid-bob",
    ]
    assert "DirectorySettings" in state["settings"]
    assert state["saved_at"].endswith("+00:00")
    stored = state["settings"]["DirectorySettings"]
    assert "secret" not in json.dumps(stored)
    assert (
        CredentialCipher(SECRET_KEY).decrypt(stored["password_bytes"].encode())
        == "secret"
    )

    # the stored settings are used when none are given
    result = runner.invoke(
        cli,
        ["-c", write_config(tmp_path, name="empty.yml"), "preview", "-s", state_file],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == []


def test_sync_requires_a_state_file(tmp_path):
    runner = CliRunner()

    result = runner.invoke(cli, ["-c", write_config(tmp_path), "sync"])

    assert result.exit_code == 2


def test_check_without_secret_key(tmp_path):
    runner = CliRunner()

    with patch("ldapsync.cli.LdapDirectorySource") as source_class:
        result = runner.invoke(
            cli,
            [
                "-c",
                write_config(tmp_path, DIRECTORY_SETTINGS, secret_key=None),
                "check",
            ],
        )

    assert result.exit_code == 1
    assert "no secret key to encrypt the password" in result.output
    source_class.assert_not_called()


def test_check_invalid_secret_key(tmp_path):
    runner = CliRunner()

    result = runner.invoke(
        cli,
        [
            "-c",
            write_config(tmp_path, DIRECTORY_SETTINGS, secret_key="not-a-key"),
            "check",
        ],
    )

    assert result.exit_code == 1
    assert "Invalid secret key" in result.output


def test_check_passes_the_cipher_to_the_source(tmp_path):
    source = Mock()
    source.bind = AsyncMock(return_value=ConnectResult(ConnectStatus.OK))
    source.close = AsyncMock()
    runner = CliRunner()

    with patch("ldapsync.cli.LdapDirectorySource", return_value=source) as source_class:
        result = runner.invoke(
            cli, ["-c", write_config(tmp_path, DIRECTORY_SETTINGS), "check"]
        )

    assert result.exit_code == 0, result.output
    settings = source_class.call_args.args[0]
    cipher = source_class.call_args.kwargs["cipher"]
    assert settings.password == ""
    assert settings.bind_password(cipher) == "secret"


def test_generate_key():
    runner = CliRunner()

    result = runner.invoke(cli, ["generate-key"])

    assert result.exit_code == 0
    key = result.output.strip()
    cipher = CredentialCipher(key)
    assert cipher.decrypt(cipher.encrypt("secret")) == "secret"
