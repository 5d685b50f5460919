"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (VAULTSYNC__SYNC__CONTENT_TIMEOUT_SECONDS=8)
  2. vaultsync.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults. The size
ceilings that define the wire contract (16 KiB shared document, 64 KiB
broadcast message) live in ``vaultsync.sizing`` and are not configurable.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("vaultsync")
_DEFAULT_STORE_PATH = str(Path(_DEFAULT_DATA_DIR) / "local.db")
_DEFAULT_IMAGE_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "images.db")
_DEFAULT_HANDLE_DIR = str(Path(platformdirs.user_cache_dir("vaultsync")) / "handles")


def _find_config_file() -> str | None:
    """Return the path of the first vaultsync.yaml found, or None."""
    candidates = [
        Path("vaultsync.yaml"),
        Path(platformdirs.user_config_dir("vaultsync")) / "vaultsync.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class CacheSettings(BaseModel):
    store_path: str = _DEFAULT_STORE_PATH
    # Mirrors the ~5 MB quota browsers apply to per-origin key/value storage
    store_max_bytes: int = 5 * 1024 * 1024
    render_capacity: int = 20


class ImageSettings(BaseModel):
    db_path: str = _DEFAULT_IMAGE_DB_PATH
    handle_dir: str = _DEFAULT_HANDLE_DIR
    max_entries: int = 200
    max_bytes: int = 50 * 1024 * 1024
    memory_entries: int = 30
    ttl_seconds: int = 7 * 24 * 60 * 60
    download_timeout_seconds: float = 15.0
    # Hosts that hand out short-lived signed URLs; caching them is pointless
    no_cache_hosts: list[str] = ["secure.notion-static.com"]


class SyncSettings(BaseModel):
    content_timeout_seconds: float = 5.0
    force_refresh_timeout_seconds: float = 10.0
    visible_tree_timeout_seconds: float = 5.0
    full_tree_timeout_seconds: float = 5.0


class PresenceSettings(BaseModel):
    heartbeat_interval_seconds: int = 120


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: VAULTSYNC__IMAGES__MAX_ENTRIES=500
        env_prefix="VAULTSYNC__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    cache: CacheSettings = CacheSettings()
    images: ImageSettings = ImageSettings()
    sync: SyncSettings = SyncSettings()
    presence: PresenceSettings = PresenceSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
