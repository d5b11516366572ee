"""Configuration loading for the sync server."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    ui_path: str = "ui/dist"


@dataclass
class StorageConfig:
    """Where the transaction log and payload store live."""

    db_path: str = "~/.syncengine/sync.db"


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    recover_on_startup: bool = True


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SYNCENGINE_ prefix."""
    return os.environ.get(f"SYNCENGINE_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)
    if ui_path := _get_env("UI_PATH"):
        config.server.ui_path = ui_path

    # Storage overrides
    if db_path := _get_env("DATABASE_PATH"):
        config.storage.db_path = db_path

    # Sync overrides
    if recover := _get_env("RECOVER_ON_STARTUP"):
        config.sync.recover_on_startup = recover.lower() in ("true", "1", "yes")

    return config


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

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    ui_path=server_data.get("ui_path", config.server.ui_path),
                )

            # Parse storage config
            if "storage" in data:
                config.storage = StorageConfig(
                    db_path=data["storage"].get("db_path", config.storage.db_path)
                )

            # Parse sync config
            if "sync" in data:
                config.sync = SyncConfig(
                    recover_on_startup=data["sync"].get(
                        "recover_on_startup", config.sync.recover_on_startup
                    ),
                )

    return _apply_env_overrides(config)
