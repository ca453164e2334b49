"""Casino chat configuration.

Loads settings from two YAML files:
  * chat.settings.yaml  — non-secret configuration
  * chat.secrets.yaml   — bearer tokens (never committed)

Both the chat server and the client core read their tunables from here.
Every interval is expressed in seconds.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SECRETS_FILE  = Path("chat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class TokenGrant(BaseModel):
    """Identity bound to an opaque bearer token."""
    user_id:      str
    username:     str
    is_moderator: bool = False


class Secrets(BaseModel):
    # token -> identity
    tokens: Dict[str, TokenGrant] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    debug:           bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ReconnectSettings(BaseModel):
    base_delay:      float = 1.0
    max_delay:       float = 30.0
    max_attempts:    int   = 5
    jitter:          float = 0.2
    connect_timeout: float = 10.0

    @field_validator("base_delay", "max_delay", "connect_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jitter")
    @classmethod
    def _jitter_range(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError("jitter must be in [0, 1)")
        return value


class CooldownSettings(BaseModel):
    limit:  int   = 1
    window: float = 2.0

    @field_validator("limit")
    @classmethod
    def _limit_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limit must be at least 1")
        return value

    @field_validator("window")
    @classmethod
    def _window_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("window must be positive")
        return value


class PresenceSettings(BaseModel):
    heartbeat_interval: float = 60.0
    stale_threshold:    float = 90.0
    grace_period:       float = 300.0

    @field_validator("heartbeat_interval", "stale_threshold")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class ClientSettings(BaseModel):
    """Tunables for the client-side chat core."""
    topic:              str   = "chat"
    cache_size:         int   = 50
    max_message_length: int   = 500
    send_timeout:       float = 15.0
    reconnect:          ReconnectSettings = Field(default_factory=ReconnectSettings)
    cooldown:           CooldownSettings  = Field(default_factory=CooldownSettings)
    presence:           PresenceSettings  = Field(default_factory=PresenceSettings)


class ServerChatSettings(BaseModel):
    """Tunables for the chat service endpoints."""
    history_size:   int   = 200
    default_limit:  int   = 50
    max_limit:      int   = 100
    cooldown:       CooldownSettings = Field(default_factory=CooldownSettings)
    presence_stale: float = 300.0
    sweep_interval: float = 60.0


class AppConfig(BaseModel):
    server:      ServerSettings     = Field(default_factory=ServerSettings)
    logging:     LoggingSettings    = Field(default_factory=LoggingSettings)
    client:      ClientSettings     = Field(default_factory=ClientSettings)
    server_chat: ServerChatSettings = Field(default_factory=ServerChatSettings)
    secrets:     Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, topic=%s, tokens=%d)",
        config.server.host,
        config.server.port,
        config.client.topic,
        len(config.secrets.tokens),
    )
    return config


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_settings(SETTINGS_FILE, SECRETS_FILE)


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    get_config.cache_clear()
