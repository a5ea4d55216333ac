"""Configuration loading for deductsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "deductsync-node"


@dataclass
class RemoteConfig:
    """Configuration for the remote realtime store."""

    backend: str = "memory"  # "memory" or "firebase"
    url: str = ""  # e.g. "https://my-project.firebaseio.com"
    deductions_path: str = "legal_data/deductions/payments"
    cases_path: str = "legal_data/cases/active"
    timeout: float = 30.0
    stream_max_backoff_seconds: float = 60.0


@dataclass
class StorageConfig:
    """Configuration for the local persistent slot."""

    db_path: str = "~/.deductsync/local.db"
    snapshot_key: str = "deductionsData"


@dataclass
class MQTTConfig:
    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "deductsync"
    keepalive: int = 60
    connect_timeout: float = 5.0


DEFAULT_STATIC_ASSETS = [
    "./",
    "./index.html",
    "./manifest.json",
    "./icons/icon-72x72.png",
    "./icons/icon-96x96.png",
    "./icons/icon-128x128.png",
    "./icons/icon-144x144.png",
    "./icons/icon-152x152.png",
    "./icons/icon-192x192.png",
    "./icons/icon-384x384.png",
    "./icons/icon-512x512.png",
]

DEFAULT_EXTERNAL_ASSETS = [
    "https://cdnjs.cloudflare.com/ajax/libs/font-awesome/6.4.0/css/all.min.css",
    "https://www.gstatic.com/firebasejs/9.22.0/firebase-app-compat.js",
    "https://www.gstatic.com/firebasejs/9.22.0/firebase-database-compat.js",
]


@dataclass
class AssetCacheConfig:
    """Configuration for the offline asset cache."""

    enabled: bool = True
    db_path: str = "~/.deductsync/assets.db"
    origin: str = "http://localhost:8080"
    static_cache_name: str = "lawyer-app-static-v2.0"
    dynamic_cache_name: str = "lawyer-app-dynamic-v2.0"
    static_assets: list[str] = field(default_factory=lambda: list(DEFAULT_STATIC_ASSETS))
    external_assets: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXTERNAL_ASSETS)
    )
    network_only_hosts: list[str] = field(
        default_factory=lambda: ["firebase", "firebaseio"]
    )
    offline_page: str = "./index.html"
    strategy: str = "stale_while_revalidate"  # or "cache_first"
    skip_waiting_on_install: bool = True
    fetch_timeout: float = 15.0


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    assets: AssetCacheConfig = field(default_factory=AssetCacheConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DEDUCTSYNC_ prefix."""
    return os.environ.get(f"DEDUCTSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Remote store overrides
    if backend := _get_env("REMOTE_BACKEND"):
        config.remote.backend = backend
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if deductions_path := _get_env("REMOTE_DEDUCTIONS_PATH"):
        config.remote.deductions_path = deductions_path
    if cases_path := _get_env("REMOTE_CASES_PATH"):
        config.remote.cases_path = cases_path
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)

    # Local slot overrides
    if db_path := _get_env("STORAGE_DB_PATH"):
        config.storage.db_path = db_path
    if snapshot_key := _get_env("STORAGE_SNAPSHOT_KEY"):
        config.storage.snapshot_key = snapshot_key

    # MQTT overrides
    if mqtt_enabled := _get_env("MQTT_ENABLED"):
        config.mqtt.enabled = _is_true(mqtt_enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password

    # Asset cache overrides
    if assets_enabled := _get_env("ASSETS_ENABLED"):
        config.assets.enabled = _is_true(assets_enabled)
    if assets_db := _get_env("ASSETS_DB_PATH"):
        config.assets.db_path = assets_db
    if origin := _get_env("ASSETS_ORIGIN"):
        config.assets.origin = origin
    if strategy := _get_env("ASSETS_STRATEGY"):
        config.assets.strategy = strategy

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    return config


def _parse_section(cls: type, data: dict, current: Any) -> Any:
    """Build a config section, keeping current values for missing keys."""
    values = {
        name: data.get(name, getattr(current, name))
        for name in cls.__dataclass_fields__
    }
    return cls(**values)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            if "remote" in data:
                config.remote = _parse_section(RemoteConfig, data["remote"], config.remote)

            if "storage" in data:
                config.storage = _parse_section(
                    StorageConfig, data["storage"], config.storage
                )

            if "mqtt" in data:
                config.mqtt = _parse_section(MQTTConfig, data["mqtt"], config.mqtt)

            if "assets" in data:
                config.assets = _parse_section(
                    AssetCacheConfig, data["assets"], config.assets
                )

            if "server" in data:
                config.server = _parse_section(ServerConfig, data["server"], config.server)

    config = _apply_env_overrides(config)

    # Default MQTT prefix is scoped to the node
    if config.mqtt.topic_prefix == "deductsync":
        config.mqtt.topic_prefix = f"deductsync/{config.node.name}"

    return config
