"""
Configuration management for voicelink.

This module defines the validated configuration dataclasses for nodes and
the player manager, and loads them (and the voice-region fragment table)
from TOML files.

Example nodes file:

    [manager]
    shards = 2
    voice_timeout = 15.0

    [[nodes]]
    host = "localhost"
    port = 2333
    password = "youshallnotpass"
    region = "eu"
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

DEFAULT_PORT = 2333
DEFAULT_PASSWORD = "youshallnotpass"

# Seconds between reconnect attempts after an unclean close
DEFAULT_RECONNECT_INTERVAL = 5.0

# Seconds the remote node keeps a disconnected session's players alive
DEFAULT_RESUME_TIMEOUT = 120

# Seconds to wait for both halves of a voice handshake
DEFAULT_VOICE_TIMEOUT = 15.0

# Forward offset applied to the replayed position when switching nodes
DEFAULT_SWITCH_OFFSET_MS = 2000


class ConfigError(ValueError):
    """Invalid voicelink configuration."""

    pass


@dataclass
class RegionTable:
    """
    Maps voice endpoint hostnames to node regions.

    Each region owns a list of hostname fragments. An endpoint belongs to
    the first region (in table order) with a fragment that prefixes its
    hostname. This is a best-effort heuristic, not part of any protocol.
    """

    fragments: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.fragments = {
            region.lower(): [fragment.lower() for fragment in fragments]
            for region, fragments in self.fragments.items()
        }

    def region_for(self, endpoint: str | None) -> str | None:
        """
        Find the region of a voice endpoint.

        Args:
            endpoint: Endpoint as sent by the platform, e.g.
                "rotterdam1234.discord.media:443". A scheme is tolerated.

        Returns:
            The region name, or None if no fragment matches.
        """
        if not endpoint:
            return None

        hostname = endpoint.lower()
        if "://" in hostname:
            hostname = urlsplit(hostname).hostname or ""
        hostname = hostname.split(":", 1)[0]

        for region, fragments in self.fragments.items():
            if any(hostname.startswith(fragment) for fragment in fragments):
                return region
        return None

    def __contains__(self, region: object) -> bool:
        return isinstance(region, str) and region.lower() in self.fragments


@dataclass
class NodeConfig:
    """Connection settings for a single playback node."""

    host: str
    port: int = DEFAULT_PORT
    password: str = DEFAULT_PASSWORD
    tag: str | None = None
    region: str | None = None
    # Full WebSocket URL; overrides host/port/secure when set
    address: str | None = None
    secure: bool = False
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    resume_timeout: int = DEFAULT_RESUME_TIMEOUT
    heartbeat: float | None = 60.0

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("Node host must not be empty")
        if not 0 < int(self.port) < 65536:
            raise ConfigError(f"Node port out of range: {self.port}")
        self.port = int(self.port)
        if self.reconnect_interval <= 0:
            raise ConfigError(
                f"reconnect_interval must be positive, got {self.reconnect_interval}"
            )
        if self.resume_timeout < 0:
            raise ConfigError(f"resume_timeout must not be negative, got {self.resume_timeout}")
        if self.region:
            self.region = self.region.lower()

    @property
    def key(self) -> str:
        """Registry key of the node: its tag, or its host."""
        return self.tag or self.host

    @property
    def ws_url(self) -> str:
        """WebSocket URL of the node's control channel."""
        if self.address:
            return self.address
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.host}:{self.port}/"

    @property
    def rest_url(self) -> str:
        """Base URL of the node's REST endpoint."""
        if self.address:
            parts = urlsplit(self.address)
            scheme = "https" if parts.scheme == "wss" else "http"
            return f"{scheme}://{parts.netloc}"
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class ManagerConfig:
    """Settings for a PlayerManager and the nodes it starts with."""

    shards: int = 1
    nodes: list[NodeConfig] = field(default_factory=list)
    voice_timeout: float = DEFAULT_VOICE_TIMEOUT
    switch_offset_ms: int = DEFAULT_SWITCH_OFFSET_MS
    regions: RegionTable = field(default_factory=lambda: get_region_table())

    def __post_init__(self) -> None:
        if self.shards < 1:
            raise ConfigError(f"shards must be at least 1, got {self.shards}")
        if self.voice_timeout <= 0:
            raise ConfigError(f"voice_timeout must be positive, got {self.voice_timeout}")
        if self.switch_offset_ms < 0:
            raise ConfigError(
                f"switch_offset_ms must not be negative, got {self.switch_offset_ms}"
            )

        keys = [node.key for node in self.nodes]
        duplicates = {key for key in keys if keys.count(key) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate node keys: {', '.join(sorted(duplicates))}")


def _parse_node(data: dict[str, Any]) -> NodeConfig:
    """Parse one [[nodes]] entry from the TOML data."""
    try:
        return NodeConfig(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid node entry {data!r}: {e}") from e


def load_region_table(config_path: Path | None = None) -> RegionTable:
    """
    Load the voice-region fragment table from a TOML file.

    Args:
        config_path: Path to a regions file. If None, uses the bundled one.

    Returns:
        Loaded RegionTable instance.
    """
    if config_path is None:
        config_path = CONFIG_DIR / "regions.toml"

    logger.debug("Loading region table from %s", config_path)

    with config_path.open("rb") as f:
        data = tomllib.load(f)

    regions = data.get("regions", {})
    if not isinstance(regions, dict):
        raise ConfigError(f"[regions] must be a table in {config_path}")

    return RegionTable(fragments={str(k): list(v) for k, v in regions.items()})


def load_manager_config(config_path: Path) -> ManagerConfig:
    """
    Load manager and node settings from a TOML file.

    Args:
        config_path: Path to the TOML file.

    Returns:
        Loaded ManagerConfig instance.

    Raises:
        ConfigError: If the file contents are invalid.
    """
    logger.debug("Loading manager config from %s", config_path)

    with config_path.open("rb") as f:
        data = tomllib.load(f)

    manager = dict(data.get("manager", {}))
    nodes = [_parse_node(entry) for entry in data.get("nodes", [])]

    regions_file = manager.pop("regions_file", None)
    if regions_file is not None:
        regions_path = Path(regions_file)
        if not regions_path.is_absolute():
            regions_path = config_path.parent / regions_path
        manager["regions"] = load_region_table(regions_path)

    try:
        return ManagerConfig(nodes=nodes, **manager)
    except TypeError as e:
        raise ConfigError(f"Invalid [manager] table: {e}") from e


# Global singleton instance (lazy loaded)
_region_table: RegionTable | None = None


def get_region_table() -> RegionTable:
    """
    Get the bundled region table (lazy loaded singleton).

    Returns:
        The RegionTable instance.
    """
    global _region_table

    if _region_table is None:
        _region_table = load_region_table()

    return _region_table


def reload_region_table() -> RegionTable:
    """
    Force reload of the bundled region table.

    Returns:
        The newly loaded RegionTable instance.
    """
    global _region_table
    _region_table = load_region_table()
    return _region_table
