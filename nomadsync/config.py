"""Configuration utilities.

This module loads configuration for both halves of nomadsync with the
following rules:
- Primary source: `nomadsync_config.json` at the working directory root.
- Overrides: environment variables, then optional text files under `config/`.
- Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator


CONFIG_DIR = Path("config")
ROOT_CONFIG_FILE = Path("nomadsync_config.json")
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


class LocalStoreConfig(BaseModel):
    url: str = Field(default="sqlite+pysqlite:///nomadsync_local.db")

    @field_validator("url")
    @classmethod
    def url_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("local_store.url must be a non-empty string")
        return v


class SyncConfig(BaseModel):
    endpoint_url: str = Field(default="http://127.0.0.1:8000")
    timeout_seconds: float = Field(default=5.0, gt=0)
    # Policy cap: entries are marked failed after this many recorded failures
    max_retries: int = Field(default=5, ge=1)
    # 0 disables the periodic trigger while online
    interval_seconds: float = Field(default=60.0, ge=0)
    device_id: Optional[str] = None

    @field_validator("endpoint_url")
    @classmethod
    def endpoint_must_be_http(cls, v: str) -> str:
        if not isinstance(v, str) or not v.startswith(("http://", "https://")):
            raise ValueError("sync.endpoint_url must be an http(s) URL")
        return v.rstrip("/")


class ServerConfig(BaseModel):
    database_url: str = Field(default="sqlite+pysqlite:///:memory:")
    auto_apply_migrations: bool = Field(default=True)


class AppConfig(BaseModel):
    local_store: LocalStoreConfig = Field(default_factory=LocalStoreConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:  # pragma: no cover - defensive
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) nomadsync_config.json at the working directory root (primary base)
    4) Safe defaults for development
    """

    base = _read_json_file(path or ROOT_CONFIG_FILE)

    def _base(key_path: str, default: Optional[str] = None) -> Optional[str]:
        cur: object = base
        for key in key_path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return str(cur) if cur is not None else default

    # Local store
    local_url = (
        _env("NOMADSYNC_LOCAL_STORE_URL")
        or _read_config_file("local_store.url")
        or _base("local_store.url", "sqlite+pysqlite:///nomadsync_local.db")
    )

    # Sync client
    endpoint_url = _env("NOMADSYNC_ENDPOINT_URL") or _read_config_file("sync.endpoint_url") or _base("sync.endpoint_url", "http://127.0.0.1:8000")
    timeout_text = _env("NOMADSYNC_TIMEOUT_SECONDS") or _read_config_file("sync.timeout_seconds") or _base("sync.timeout_seconds", "5")
    max_retries_text = _env("NOMADSYNC_MAX_RETRIES") or _read_config_file("sync.max_retries") or _base("sync.max_retries", "5")
    interval_text = _env("NOMADSYNC_INTERVAL_SECONDS") or _read_config_file("sync.interval_seconds") or _base("sync.interval_seconds", "60")
    device_id = _env("NOMADSYNC_DEVICE_ID") or _read_config_file("sync.device_id") or _base("sync.device_id")

    # Remote endpoint
    database_url = (
        _env("TEST_DATABASE_URL")
        or _env("DATABASE_URL")
        or _read_config_file("server.database_url")
        or _base("server.database_url", "sqlite+pysqlite:///:memory:")
    )
    auto_migrate_text = _env("AUTO_APPLY_MIGRATIONS") or _read_config_file("server.auto_apply_migrations") or _base("server.auto_apply_migrations", "true")

    try:
        cfg = AppConfig(
            local_store=LocalStoreConfig(url=local_url),
            sync=SyncConfig(
                endpoint_url=endpoint_url,
                timeout_seconds=float(str(timeout_text).strip()),
                max_retries=int(str(max_retries_text).strip()),
                interval_seconds=float(str(interval_text).strip()),
                device_id=device_id,
            ),
            server=ServerConfig(
                database_url=database_url,
                auto_apply_migrations=str(auto_migrate_text).strip().lower() in {"1", "true", "yes", "on"},
            ),
        )
        return cfg
    except PydanticValidationError as e:
        logger.error("Invalid application configuration: %s", e)
        raise


__all__ = [
    "AppConfig",
    "LocalStoreConfig",
    "SyncConfig",
    "ServerConfig",
    "load_config",
]
