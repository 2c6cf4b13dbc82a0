"""Picsta client configuration.

Loads settings from two YAML files:
  * picsta.settings.yaml  - non-secret configuration
  * picsta.secrets.yaml   - session cookies (never committed)

Both files are optional; missing files fall back to defaults so the client
can run against a local development server out of the box.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("picsta.settings.yaml")
SECRETS_FILE  = Path("picsta.secrets.yaml")

MAX_PAGE_SIZE = 100


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class SessionSecrets(BaseModel):
    """HttpOnly cookies issued by the Picsta auth endpoints."""
    access_token:  Optional[str] = None
    refresh_token: Optional[str] = None

    def cookies(self) -> Dict[str, str]:
        jar: Dict[str, str] = {}
        if self.access_token:
            jar["accessToken"] = self.access_token
        if self.refresh_token:
            jar["refreshToken"] = self.refresh_token
        return jar


class Secrets(BaseModel):
    session: SessionSecrets = Field(default_factory=SessionSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    api_base_url:            str       = "http://localhost:5000/api"
    socket_url:              str       = "http://localhost:5000"
    request_timeout_seconds: float     = 10.0
    transports:              List[str] = Field(default_factory=lambda: ["websocket", "polling"])


class ConnectionSettings(BaseModel):
    """Reconnect backoff for the Socket.IO transport."""
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds:     float = 30.0
    backoff_multiplier:      float = 2.0
    backoff_jitter:          float = 0.2
    connect_timeout_seconds: float = 10.0

    @field_validator("backoff_jitter")
    @classmethod
    def _jitter_fraction(cls, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ValueError("backoff_jitter must be in [0, 1)")
        return value


class SyncSettings(BaseModel):
    """Fallback polling and history paging."""
    poll_interval_seconds: float = 30.0
    history_page_size:     int   = 50

    @field_validator("poll_interval_seconds")
    @classmethod
    def _bounded_interval(cls, value: float) -> float:
        # Polling is the backstop for missed push events; keep it bounded.
        return min(max(value, 5.0), 300.0)

    @field_validator("history_page_size")
    @classmethod
    def _bounded_page(cls, value: int) -> int:
        return min(max(value, 1), MAX_PAGE_SIZE)


class LoggingSettings(BaseModel):
    level: str = "info"


class PicstaConfig(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    sync:       SyncSettings       = Field(default_factory=SyncSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> PicstaConfig:
    """Load and merge settings + secrets into a single *PicstaConfig* object.

    When only ``settings_path`` is given, the secrets file is looked up next
    to it.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in PicstaConfig
    settings_data["secrets"] = secrets_data

    config = PicstaConfig(**settings_data)
    logger.info(
        "Settings loaded (api=%s, socket=%s, poll=%ss, session_cookie=%s)",
        config.server.api_base_url,
        config.server.socket_url,
        config.sync.poll_interval_seconds,
        "yes" if config.secrets.session.access_token else "no",
    )
    return config


_config: Optional[PicstaConfig] = None


def get_config() -> PicstaConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[PicstaConfig]) -> None:
    """Set (or reset with None) the process-wide config."""
    global _config
    _config = config
