from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} must be an int, got: {raw!r}") from e
    return value


def _get_env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _get_env_optional(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw


@dataclass(frozen=True)
class Settings:
    # Database
    db_path: Path

    # Release action / supervision
    script_path: Path
    release_timeout_ms: int
    grace_ms: int
    write_retry_ms: int

    # Scheduler
    tick_ms: int

    # Retention
    cleanup_days: int

    # API
    api_key: Optional[str]

    # Server (used by releaser.main when starting uvicorn programmatically)
    host: str
    port: int
    log_level: str


def load_settings() -> Settings:
    """
    Loads settings from env vars with sane defaults.

    Env vars:
      - RELEASER_DB_PATH (default: ./var/releases.db)
      - RELEASER_SCRIPT_PATH (default: ./scripts/release.sh)
      - RELEASER_TIMEOUT_MS (default: 1800000, 30 minutes)
      - RELEASER_GRACE_MS (default: 5000)
      - RELEASER_WRITE_RETRY_MS (default: 500)
      - RELEASER_TICK_MS (default: 5000)
      - RELEASER_CLEANUP_DAYS (default: 30)
      - RELEASER_API_KEY (default: unset, no auth)
      - RELEASER_HOST (default: 127.0.0.1)
      - RELEASER_PORT (default: 8080)
      - RELEASER_LOG_LEVEL (default: info)
    """
    db_path = Path(_get_env_str("RELEASER_DB_PATH", "./var/releases.db")).expanduser()
    script_path = Path(_get_env_str("RELEASER_SCRIPT_PATH", "./scripts/release.sh")).expanduser()

    release_timeout_ms = _get_env_int("RELEASER_TIMEOUT_MS", 30 * 60 * 1000)
    if release_timeout_ms <= 0:
        raise ValueError("RELEASER_TIMEOUT_MS must be > 0")

    grace_ms = _get_env_int("RELEASER_GRACE_MS", 5_000)
    if grace_ms <= 0:
        raise ValueError("RELEASER_GRACE_MS must be > 0")

    write_retry_ms = _get_env_int("RELEASER_WRITE_RETRY_MS", 500)
    if write_retry_ms <= 0:
        raise ValueError("RELEASER_WRITE_RETRY_MS must be > 0")

    tick_ms = _get_env_int("RELEASER_TICK_MS", 5_000)
    if tick_ms <= 0:
        raise ValueError("RELEASER_TICK_MS must be > 0")

    cleanup_days = _get_env_int("RELEASER_CLEANUP_DAYS", 30)
    if cleanup_days < 0:
        raise ValueError("RELEASER_CLEANUP_DAYS must be >= 0")

    host = _get_env_str("RELEASER_HOST", "127.0.0.1")
    port = _get_env_int("RELEASER_PORT", 8080)
    if not (1 <= port <= 65535):
        raise ValueError("RELEASER_PORT must be between 1 and 65535")

    log_level = _get_env_str("RELEASER_LOG_LEVEL", "info").lower()

    return Settings(
        db_path=db_path,
        script_path=script_path,
        release_timeout_ms=release_timeout_ms,
        grace_ms=grace_ms,
        write_retry_ms=write_retry_ms,
        tick_ms=tick_ms,
        cleanup_days=cleanup_days,
        api_key=_get_env_optional("RELEASER_API_KEY"),
        host=host,
        port=port,
        log_level=log_level,
    )
