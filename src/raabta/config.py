"""
Configuration — relay endpoints, rendezvous, timeouts, file servers.

Loaded from ``<home>/config/config.yaml``. A missing or broken file
falls back to defaults with a warning; nothing here is fatal.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import RAABTA_HOME

logger = logging.getLogger("raabta.config")

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
    "wss://nostr.wine",
    "wss://relay.snort.social",
]

DEFAULT_FILEDROP_SERVER = "https://filedrop.besoeasy.com"


class RaabtaConfig(BaseModel):
    """Persistent configuration for the sync engine."""

    relays: list[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    relay_connect_timeout: float = Field(
        default=5.0, description="Upper bound on waiting for subscription quorum"
    )
    relay_publish_timeout: float = 10.0
    subscription_window_days: int = 7
    history_window_days: int = 365

    signaling_url: Optional[str] = Field(
        default=None, description="Rendezvous websocket; direct links disabled when unset"
    )
    direct_connect_timeout: float = 10.0
    file_chunk_size: int = 16 * 1024
    file_pacing_every: int = 10
    file_pacing_delay: float = 0.01

    filedrop_server: str = DEFAULT_FILEDROP_SERVER
    filedrop_servers: list[str] = Field(default_factory=list)

    message_retention_days: int = 365


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the raabta home directory (``RAABTA_HOME`` or ``~/.raabta``)."""
    return Path(home or RAABTA_HOME).expanduser()


def config_path(home: Path) -> Path:
    return home / "config" / "config.yaml"


def load_config(home: Optional[Path] = None) -> RaabtaConfig:
    """Load configuration from disk.

    Args:
        home: Raabta home directory. Defaults to ``~/.raabta``.

    Returns:
        RaabtaConfig from config.yaml, or defaults.
    """
    path = config_path(resolve_home(home))
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return RaabtaConfig(**data)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config: %s — using defaults", exc)
    return RaabtaConfig()


def save_config(config: RaabtaConfig, home: Optional[Path] = None) -> Path:
    """Write configuration to ``<home>/config/config.yaml``."""
    path = config_path(resolve_home(home))
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    path.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return path


def _normalize_server(server: str) -> str:
    return server.strip().rstrip("/")


def saved_filedrop_servers(config: RaabtaConfig) -> list[str]:
    """Saved upload servers, always led by the default one."""
    servers = list(config.filedrop_servers)
    if DEFAULT_FILEDROP_SERVER not in servers:
        servers.insert(0, DEFAULT_FILEDROP_SERVER)
    return servers


def set_filedrop_server(config: RaabtaConfig, server: Optional[str]) -> str:
    """Select the active upload server. Blank resets to the default."""
    if server and server.strip():
        config.filedrop_server = _normalize_server(server)
    else:
        config.filedrop_server = DEFAULT_FILEDROP_SERVER
    return config.filedrop_server


def add_filedrop_server(config: RaabtaConfig, server: str) -> bool:
    """Remember an upload server. Returns False if blank or already saved."""
    if not server or not server.strip():
        return False
    url = _normalize_server(server)
    if url in saved_filedrop_servers(config):
        return False
    config.filedrop_servers.append(url)
    return True


def remove_filedrop_server(config: RaabtaConfig, server: str) -> bool:
    """Forget a saved upload server. The default cannot be removed."""
    if server == DEFAULT_FILEDROP_SERVER or server not in config.filedrop_servers:
        return False
    config.filedrop_servers = [s for s in config.filedrop_servers if s != server]
    return True
