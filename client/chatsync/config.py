"""chatsync client configuration.

Loads settings from two YAML files:
  * chatsync.settings.yaml  : endpoints, connection tuning, cache, logging
  * chatsync.secrets.yaml   : optional login credentials (never committed)

Both files are optional; missing files fall back to the defaults below.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatsync.settings.yaml")
SECRETS_FILE  = Path("chatsync.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    api_base_url:            str   = "http://localhost:8080/api"
    ws_url:                  str   = "ws://localhost:8080/ws"
    request_timeout_seconds: float = 10.0


class ConnectionSettings(BaseModel):
    """Heartbeat, backoff and handshake tuning for the duplex connection."""
    heartbeat_outgoing_ms:     int   = 4000
    heartbeat_incoming_ms:     int   = 4000
    heartbeat_tolerance:       float = 2.0
    reconnect_base_delay_ms:   int   = 5000
    reconnect_cap_delay_ms:    int   = 30000
    max_reconnect_attempts:    int   = 5
    join_settle_delay_ms:      int   = 300
    handshake_timeout_seconds: float = 10.0

    @field_validator("max_reconnect_attempts")
    @classmethod
    def _non_negative_attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        return value

    @field_validator("reconnect_cap_delay_ms")
    @classmethod
    def _positive_cap(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("reconnect_cap_delay_ms must be > 0")
        return value


class CacheSettings(BaseModel):
    db_path:      str = "chatsync_cache.duckdb"
    max_messages: int = 1000


class BridgeSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    cache:      CacheSettings      = Field(default_factory=CacheSettings)
    bridge:     BridgeSettings     = Field(default_factory=BridgeSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (api=%s, ws=%s, max_reconnect_attempts=%s)",
        app_settings.server.api_base_url,
        app_settings.server.ws_url,
        app_settings.connection.max_reconnect_attempts,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings (for testing)."""
    global _config
    _config = None
