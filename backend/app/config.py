"""Parley application configuration.

Loads settings from two YAML files:
  * parley.settings.yaml: non-secret configuration
  * parley.secrets.yaml: secrets (never committed)

The secrets file sits next to the settings file. ``PARLEY_SETTINGS`` may point
at a settings file elsewhere; otherwise ``./parley.settings.yaml`` and then
``./config/parley.settings.yaml`` are tried. Missing files mean defaults.

Relative paths (``database.path``) resolve from the directory holding the
settings file, or from its parent when that directory is called ``config``.
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

SETTINGS_FILENAME = "parley.settings.yaml"
SECRETS_FILENAME  = "parley.secrets.yaml"
SETTINGS_ENV_VAR  = "PARLEY_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _default_settings_path() -> Path:
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    if env_path:
        return Path(env_path)
    for candidate in (Path(SETTINGS_FILENAME), Path("config") / SETTINGS_FILENAME):
        if candidate.exists():
            return candidate
    return Path(SETTINGS_FILENAME)


def _base_dir(settings_path: Path) -> Path:
    parent = settings_path.resolve().parent
    return parent.parent if parent.name == "config" else parent


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class DirectorySecrets(BaseModel):
    """Static identity directory: username -> secret."""
    users: Dict[str, str] = Field(default_factory=dict)


class Secrets(BaseModel):
    directory: DirectorySecrets = Field(default_factory=DirectorySecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173"]
    )


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    path: str = "messages.duckdb"


class ChatSettings(BaseModel):
    """Routing policy and history paging."""
    echo_to_sender:    bool = True
    history_page_size: int  = Field(default=50, ge=1)
    max_page_size:     int  = Field(default=200, ge=1)


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else _default_settings_path()
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(settings_path.parent / SECRETS_FILENAME)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    db_path = config.database.path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        config.database.path = str(_base_dir(settings_path) / db_path)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, echo_to_sender=%s, directory_users=%d)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.chat.echo_to_sender,
        len(config.secrets.directory.users),
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide config, loaded on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or with None, forget) the process-wide config."""
    global _config
    _config = config
