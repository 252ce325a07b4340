"""Configuration management for the convocation RFID tracker.

Loads configuration from JSON file with environment-based overrides.
Secrets (Airtable key, Tito token) can be supplied through the environment
instead of the file. Supports hot-reload via API endpoint.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def get_app_dir() -> Path:
    """Get the application directory.

    When running as PyInstaller bundle, returns the directory containing the .exe.
    When running as script, returns the backend directory.
    """
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent
    else:
        return Path(__file__).parent


class HttpConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8090


class StorageConfig(BaseModel):
    """Tag record backend selection."""

    backend: Literal["airtable", "sqlite"] = "sqlite"
    sqlite_path: str = "data/tracker.db"


class AirtableConfig(BaseModel):
    """Airtable record store configuration."""

    api_base: str = "https://api.airtable.com/v0"
    api_key: str = ""
    base_id: str = ""
    rfid_table: str = ""
    graduates_table: str = ""
    page_size: int = Field(default=100, ge=1, le=100)
    timeout_seconds: float = 15.0


class TitoConfig(BaseModel):
    """Ticketing service configuration."""

    api_base: str = "https://api.tito.io/v3"
    checkin_base: str = "https://checkin.tito.io"
    api_token: str = ""
    account_slug: str = ""
    event_slug: str = ""
    # Station -> Tito check-in list slug. Stations without a list skip check-in.
    checkin_lists: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 10.0


class CacheConfig(BaseModel):
    """Tag population snapshot settings."""

    ttl_seconds: float = 120.0


class LifecycleConfig(BaseModel):
    """Tag lifecycle rules."""

    bulk_scan_limit: int = 100
    min_epc_length: int = 4
    allow_reencode_void: bool = False
    max_update_retries: int = 3
    recent_scans_limit: int = 50


class MqttConfig(BaseModel):
    """MQTT broker configuration for fixed station readers."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 1883
    username: str = ""
    password: str = ""
    use_tls: bool = False


class ReaderConfig(BaseModel):
    """Fixed station reader ingest configuration."""

    topic_tag_stream: str = "stations/+/stream/tag"
    scanned_by_prefix: str = "reader"
    debounce_ms: int = 5000
    housekeeping_interval_seconds: int = 60


class AuthConfig(BaseModel):
    """Authentication configuration."""

    enabled: bool = False
    token: str = ""


class TrackerConfig(BaseModel):
    """Complete tracker configuration."""

    http: HttpConfig = Field(default_factory=HttpConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    airtable: AirtableConfig = Field(default_factory=AirtableConfig)
    tito: TitoConfig = Field(default_factory=TitoConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    reader: ReaderConfig = Field(default_factory=ReaderConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    config_path: str = Field(
        default="conf/tracker-config.json",
        description="Path to JSON configuration file",
    )
    env: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    airtable_api_key: Optional[str] = Field(default=None, description="Overrides airtable.api_key")
    tito_api_token: Optional[str] = Field(default=None, description="Overrides tito.api_token")

    class Config:
        env_prefix = "TRACKER_"


# Global configuration instance
_config: Optional[TrackerConfig] = None
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def _apply_secret_overrides(config: TrackerConfig, settings: Settings) -> TrackerConfig:
    if settings.airtable_api_key:
        config.airtable.api_key = settings.airtable_api_key
    if settings.tito_api_token:
        config.tito.api_token = settings.tito_api_token
    return config


def load_config(config_path: Optional[str] = None) -> TrackerConfig:
    """Load configuration from JSON file.

    Args:
        config_path: Optional path to config file. If not provided,
                     uses path from settings.

    Returns:
        TrackerConfig instance with loaded configuration.
    """
    global _config

    settings = get_settings()

    if config_path:
        path = Path(config_path)
    else:
        path = get_app_dir() / settings.config_path

    # Try environment-specific config first
    env_path = path.parent / f"{path.stem}.{settings.env}{path.suffix}"
    if env_path.exists():
        path = env_path
        logger.info(f"Using environment config: {env_path}")

    if path.exists():
        logger.info(f"Loading configuration from: {path}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        config = TrackerConfig.model_validate(data)
    else:
        logger.warning(f"Config file not found at {path}, using defaults")
        config = TrackerConfig()

    _config = _apply_secret_overrides(config, settings)
    return _config


def get_config() -> TrackerConfig:
    """Get current configuration (singleton with lazy load)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> TrackerConfig:
    """Reload configuration from file.

    Returns:
        Newly loaded TrackerConfig instance.
    """
    global _config
    _config = None
    return load_config()


def save_config(config: TrackerConfig, config_path: Optional[str] = None) -> None:
    """Save configuration to JSON file.

    Args:
        config: TrackerConfig instance to save.
        config_path: Optional path to save config. Uses default if not provided.
    """
    global _config

    settings = get_settings()
    path = Path(config_path) if config_path else get_app_dir() / settings.config_path

    path.parent.mkdir(parents=True, exist_ok=True)

    # Secrets supplied through the environment never land in the file
    data = config.model_dump()
    if settings.airtable_api_key:
        data["airtable"]["api_key"] = ""
    if settings.tito_api_token:
        data["tito"]["api_token"] = ""

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)

    _config = config
    logger.info(f"Configuration saved to: {path}")
