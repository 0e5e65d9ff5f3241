"""CollEra application configuration.

Loads settings from two YAML files:
  * collera.settings.yaml: non-secret configuration
  * collera.secrets.yaml: secrets (never committed)

Either path can be overridden with the COLLERA_SETTINGS / COLLERA_SECRETS
environment variables. Missing files fall back to the model defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("collera.settings.yaml")
SECRETS_FILE  = Path("collera.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    # DuckDB file; ":memory:" keeps everything in-process (tests)
    path: str = "collera.duckdb"


class ChatSettings(BaseModel):
    """Limits applied by the chat store and REST facade."""
    max_content_length:  int = 2000
    default_page_size:   int = 50
    max_page_size:       int = 100
    deleted_placeholder: str = "This message was deleted"

    @field_validator("max_content_length", "default_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class AuthSettings(BaseModel):
    algorithm:         str  = "HS256"
    token_expire_days: int  = 7
    require_verified:  bool = True


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path or os.getenv("COLLERA_SETTINGS") or SETTINGS_FILE)
    secrets_path  = Path(secrets_path or os.getenv("COLLERA_SECRETS") or SECRETS_FILE)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, max_content_length=%d)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.chat.max_content_length,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
