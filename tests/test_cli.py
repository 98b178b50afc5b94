"""CLI integration tests (offline: no relay or rendezvous is contacted)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from raabta.cli import main
from raabta.config import DEFAULT_FILEDROP_SERVER, RaabtaConfig, load_config, save_config
from raabta.identity import load_identity
from raabta.models import Message
from raabta.sync.store import MessageStore

from conftest import make_identity


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def initialized(runner: CliRunner, home: Path) -> Path:
    """A home with an identity and a config that has no transports."""
    result = runner.invoke(main, ["init", "--home", str(home)])
    assert result.exit_code == 0, result.output
    save_config(RaabtaConfig(relays=[]), home)
    return home


def _invoke(runner: CliRunner, home: Path, *args: str):
    return runner.invoke(main, [*args, "--home", str(home)])


class TestIdentityCommands:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "raabta" in result.output

    def test_init(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(runner, home, "init")
        assert result.exit_code == 0
        identity = load_identity(home)
        assert identity is not None
        assert identity.username in result.output
        assert (home / "config" / "config.yaml").exists()

    def test_init_refuses_overwrite(self, runner: CliRunner, initialized: Path) -> None:
        before = load_identity(initialized)
        result = _invoke(runner, initialized, "init")
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert load_identity(initialized) == before

        forced = _invoke(runner, initialized, "init", "--force")
        assert forced.exit_code == 0
        assert load_identity(initialized).public_key != before.public_key

    def test_init_import(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(runner, home, "init", "--import-key", "01" * 32)
        assert result.exit_code == 0
        assert load_identity(home).private_key == "01" * 32

    def test_init_bad_key(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(runner, home, "init", "--import-key", "nothex")
        assert result.exit_code == 1
        assert "Invalid private key" in result.output

    def test_whoami_json(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "whoami", "--json-out")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["public_key"] == load_identity(initialized).public_key
        assert "private_key" not in data

    def test_whoami_without_identity(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(runner, home, "whoami")
        assert result.exit_code == 1
        assert "No identity found" in result.output


class TestContactCommands:
    def test_add_list_remove(self, runner: CliRunner, initialized: Path) -> None:
        peer = make_identity().public_key
        assert _invoke(runner, initialized, "contact", "add", peer, "--name", "Bob").exit_code == 0
        again = _invoke(runner, initialized, "contact", "add", peer)
        assert "Already a contact" in again.output

        listed = _invoke(runner, initialized, "contact", "list", "--json-out")
        contacts = json.loads(listed.output)
        assert [(c["address"], c["display_name"]) for c in contacts] == [(peer, "Bob")]

        table = _invoke(runner, initialized, "contact", "list")
        assert "Contacts (1)" in table.output

        removed = _invoke(runner, initialized, "contact", "remove", peer, "--yes")
        assert removed.exit_code == 0
        assert "Removed contact" in removed.output
        assert json.loads(_invoke(runner, initialized, "contact", "list", "--json-out").output) == []

    def test_add_invalid(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "contact", "add", "02" + "zz" * 32)
        assert result.exit_code == 1
        assert "Invalid address" in result.output

    def test_empty_list(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "contact", "list")
        assert "No contacts yet" in result.output


class TestMessagingCommands:
    def test_send_requires_content(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "send", make_identity().public_key)
        assert result.exit_code == 2

    def test_send_offline_saves_locally(self, runner: CliRunner, initialized: Path) -> None:
        peer = make_identity().public_key
        result = _invoke(runner, initialized, "send", peer, "hello")
        assert result.exit_code == 0, result.output
        assert "Saved locally" in result.output

        history = _invoke(runner, initialized, "history", peer, "--json-out")
        messages = json.loads(history.output)
        assert [m["text"] for m in messages] == ["hello"]
        assert messages[0]["is_sent"] is True
        assert "ciphertext" not in messages[0]

    def test_history_empty(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "history", make_identity().public_key)
        assert result.exit_code == 0
        assert "No messages" in result.output

    def test_history_reconcile_needs_relays(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "history", make_identity().public_key, "--reconcile")
        assert result.exit_code == 1
        assert "Relay transport not configured" in result.output

    def test_status(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "status")
        assert result.exit_code == 0
        assert load_identity(initialized).username in result.output
        assert "disabled" in result.output

    def test_sweep(self, runner: CliRunner, initialized: Path) -> None:
        peer = make_identity().public_key
        store = MessageStore(initialized / "raabta.db")
        store.append_message(Message(
            conversation_id=peer, sender=peer, recipient="me", text="old", expires_at=1,
        ))
        store.close()
        result = _invoke(runner, initialized, "sweep")
        assert result.exit_code == 0
        assert "Swept 1 expired" in result.output


class TestRelayCommands:
    def test_add_list_remove(self, runner: CliRunner, initialized: Path) -> None:
        assert _invoke(runner, initialized, "relay", "add", "wss://relay.test").exit_code == 0
        assert load_config(initialized).relays == ["wss://relay.test"]
        assert "wss://relay.test" in _invoke(runner, initialized, "relay", "list").output
        assert "Already configured" in _invoke(runner, initialized, "relay", "add", "wss://relay.test").output

        assert _invoke(runner, initialized, "relay", "remove", "wss://relay.test").exit_code == 0
        assert load_config(initialized).relays == []
        assert "No relays configured" in _invoke(runner, initialized, "relay", "list").output

    def test_add_rejects_http(self, runner: CliRunner, initialized: Path) -> None:
        result = _invoke(runner, initialized, "relay", "add", "https://relay.test")
        assert result.exit_code == 1
        assert load_config(initialized).relays == []

    def test_filedrop_servers(self, runner: CliRunner, initialized: Path) -> None:
        assert _invoke(runner, initialized, "filedrop", "use", "https://drop.test/").exit_code == 0
        config = load_config(initialized)
        assert config.filedrop_server == "https://drop.test"
        assert config.filedrop_servers == ["https://drop.test"]
        listed = _invoke(runner, initialized, "filedrop", "list").output
        assert DEFAULT_FILEDROP_SERVER in listed and "https://drop.test" in listed

        assert _invoke(runner, initialized, "filedrop", "remove", "https://drop.test").exit_code == 0
        config = load_config(initialized)
        assert config.filedrop_server == DEFAULT_FILEDROP_SERVER
        assert config.filedrop_servers == []

        assert _invoke(runner, initialized, "filedrop", "remove", DEFAULT_FILEDROP_SERVER).exit_code == 1
