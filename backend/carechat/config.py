"""CareChat application configuration.

Loads settings from a single YAML file:
  * carechat.settings.yaml: server, logging, database, identity provider,
    messaging limits and presence tuning

The file location can be overridden with the ``CARECHAT_SETTINGS`` environment
variable. A missing file is not an error; every section has defaults suitable
for local development.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("carechat.settings.yaml")
SETTINGS_ENV_VAR = "CARECHAT_SETTINGS"

_LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.lower().strip()
        if value not in _LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(_LOG_LEVELS)}")
        return value


class DatabaseSettings(BaseModel):
    path: str = "carechat.duckdb"


class IdentitySettings(BaseModel):
    """AWS Cognito user pool used to verify bearer tokens."""
    region:                     str   = "eu-west-2"
    user_pool_id:               str   = ""
    client_id:                  str   = ""
    jwks_cache_ttl_seconds:     int   = Field(default=600, ge=1)
    jwks_min_refresh_seconds:   float = Field(default=12.0, ge=0)
    http_timeout_seconds:       float = Field(default=5.0, gt=0)
    leeway_seconds:             int   = Field(default=0, ge=0)

    @property
    def issuer(self) -> str:
        return f"https://cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}"

    @property
    def jwks_url(self) -> str:
        return f"{self.issuer}/.well-known/jwks.json"


class MessagingSettings(BaseModel):
    edit_window_minutes:    int = Field(default=15, ge=0)
    max_content_length:     int = Field(default=1000, ge=1)
    default_page_size:      int = Field(default=50, ge=1)
    max_page_size:          int = Field(default=100, ge=1)
    conversation_list_size: int = Field(default=20, ge=1)
    preview_length:         int = Field(default=50, ge=1)


class PresenceSettings(BaseModel):
    lock_shards: int = Field(default=64, ge=1)


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    database:  DatabaseSettings  = Field(default_factory=DatabaseSettings)
    identity:  IdentitySettings  = Field(default_factory=IdentitySettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    presence:  PresenceSettings  = Field(default_factory=PresenceSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_path(raw: str, settings_path: Path) -> str:
    """Resolve a relative file path against the settings file directory."""
    if raw == ":memory:":
        return raw
    path = Path(raw)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load settings into a single *AppSettings* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    app_settings = AppSettings(**_load_yaml(settings_path))
    if settings_path.exists():
        app_settings.database.path = _resolve_path(app_settings.database.path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, user_pool=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.identity.user_pool_id or "<unset>",
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppSettings) -> None:
    """Set (or replace) the process-wide settings."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget cached settings so the next ``get_config()`` reloads them."""
    global _config
    _config = None
