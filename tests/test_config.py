"""Tests for configuration loading and upload server selection."""

from __future__ import annotations

from pathlib import Path

import yaml

from raabta.config import (
    DEFAULT_FILEDROP_SERVER,
    DEFAULT_RELAYS,
    RaabtaConfig,
    add_filedrop_server,
    config_path,
    load_config,
    remove_filedrop_server,
    save_config,
    saved_filedrop_servers,
    set_filedrop_server,
)


class TestLoadSave:
    def test_defaults_when_missing(self, home: Path) -> None:
        config = load_config(home)
        assert config.relays == DEFAULT_RELAYS
        assert config.signaling_url is None
        assert config.file_chunk_size == 16 * 1024
        assert config.message_retention_days == 365

    def test_round_trip(self, home: Path) -> None:
        config = RaabtaConfig(relays=["wss://one.test"], signaling_url="wss://rdv.test")
        path = save_config(config, home)
        assert path == config_path(home)
        assert load_config(home) == config

    def test_partial_file(self, home: Path) -> None:
        path = config_path(home)
        path.parent.mkdir(parents=True)
        path.write_text(yaml.dump({"relay_publish_timeout": 3.5}))
        config = load_config(home)
        assert config.relay_publish_timeout == 3.5
        assert config.relays == DEFAULT_RELAYS

    def test_broken_file_falls_back(self, home: Path) -> None:
        path = config_path(home)
        path.parent.mkdir(parents=True)
        path.write_text("relays: [unclosed")
        assert load_config(home) == RaabtaConfig()

    def test_invalid_values_fall_back(self, home: Path) -> None:
        path = config_path(home)
        path.parent.mkdir(parents=True)
        path.write_text(yaml.dump({"relay_connect_timeout": "soon"}))
        assert load_config(home).relay_connect_timeout == 5.0

    def test_default_lists_not_shared(self) -> None:
        first, second = RaabtaConfig(), RaabtaConfig()
        first.relays.append("wss://extra.test")
        assert "wss://extra.test" not in second.relays


class TestFileDropServers:
    def test_default_always_listed_first(self) -> None:
        config = RaabtaConfig(filedrop_servers=["https://mine.test"])
        assert saved_filedrop_servers(config) == [DEFAULT_FILEDROP_SERVER, "https://mine.test"]

    def test_set_and_reset(self) -> None:
        config = RaabtaConfig()
        assert set_filedrop_server(config, " https://mine.test/ ") == "https://mine.test"
        assert config.filedrop_server == "https://mine.test"
        assert set_filedrop_server(config, "") == DEFAULT_FILEDROP_SERVER

    def test_add(self) -> None:
        config = RaabtaConfig()
        assert add_filedrop_server(config, "https://mine.test/")
        assert not add_filedrop_server(config, "https://mine.test")
        assert not add_filedrop_server(config, DEFAULT_FILEDROP_SERVER)
        assert not add_filedrop_server(config, "   ")
        assert config.filedrop_servers == ["https://mine.test"]

    def test_remove(self) -> None:
        config = RaabtaConfig(filedrop_servers=["https://mine.test"])
        assert not remove_filedrop_server(config, DEFAULT_FILEDROP_SERVER)
        assert not remove_filedrop_server(config, "https://other.test")
        assert remove_filedrop_server(config, "https://mine.test")
        assert config.filedrop_servers == []
