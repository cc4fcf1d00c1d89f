"""Concord configuration — reads from concord.toml, env vars, and CLI args."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Dict, Any
from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger("concord.config")


class ConcordSettings(BaseSettings):
    """Daemon and engine settings."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8410
    log_level: str = "info"

    # Database (SQLite by default for zero-setup)
    database_url: str = Field(
        default="sqlite+aiosqlite:///concord.db",
        alias="CONCORD_DATABASE_URL",
    )

    # Auth
    api_key: str = Field(default="concord_dev_key", alias="CONCORD_API_KEY")

    # Trigger gateway
    timezone: str = "UTC"
    schedule_cron: str | None = "*/30 * * * *"
    sweep_interval_seconds: int = 300
    tenants: list[str] = Field(default_factory=list)

    # Engine
    batch_size: int = 100
    max_concurrent: int = 4
    flush_every: int = 50
    flush_interval_seconds: float = 5.0
    max_run_seconds: int = 1800
    stale_after_seconds: int = 900
    apply_error_threshold: int = 25  # abort once consecutive apply failures exceed this, 0 disables
    max_detail_items: int = 50

    # Sources (loaded from concord.toml [sources] section)
    sources: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = {"env_prefix": "CONCORD_", "env_file": ".env", "extra": "ignore"}


class ClientSettings(BaseSettings):
    """CLI client settings."""

    host: str = Field(default="http://localhost:8410", alias="CONCORD_HOST")
    api_key: str = Field(default="concord_dev_key", alias="CONCORD_API_KEY")
    tenant: str | None = Field(default=None, alias="CONCORD_TENANT")

    model_config = {"env_prefix": "CONCORD_"}


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}


def _load_toml_config() -> Dict[str, Any]:
    """Load configuration from concord.toml files.

    Searches for concord.toml in:
    1. CONCORD_HOME (~/.concord/concord.toml by default)
    2. Current directory (./concord.toml)

    Returns:
        Combined configuration dict from found files
    """
    config: Dict[str, Any] = {}

    concord_home = Path(os.environ.get("CONCORD_HOME", "~/.concord")).expanduser()
    global_config_path = concord_home / "concord.toml"
    if global_config_path.exists():
        config.update(_read_toml(global_config_path))

    # Local file takes precedence; sources are merged per name
    local_config_path = Path("concord.toml")
    if local_config_path.exists():
        local_config = _read_toml(local_config_path)
        if "sources" in local_config:
            config.setdefault("sources", {}).update(local_config["sources"])
        for key, value in local_config.items():
            if key != "sources":
                config[key] = value

    return config


def get_settings() -> ConcordSettings:
    toml_config = _load_toml_config()

    settings = ConcordSettings()
    # Environment wins over concord.toml for scalar keys
    for key, value in toml_config.items():
        if key == "sources":
            continue
        if key in ConcordSettings.model_fields and f"CONCORD_{key.upper()}" not in os.environ:
            setattr(settings, key, value)
    if "sources" in toml_config:
        settings.sources = toml_config["sources"]

    return settings


def get_client_settings() -> ClientSettings:
    return ClientSettings()
