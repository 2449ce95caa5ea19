# src/releaser/api/deps.py
from __future__ import annotations

import hmac
import sqlite3
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request

from releaser.config import Settings
from releaser.engine import Scheduler
from releaser.storage import ReleaseRepo, SQLiteDB


def get_settings(request: Request) -> Settings:
    """
    Per-request access to settings stored on app.state during startup.
    """
    return request.app.state.settings  # type: ignore[attr-defined]


def get_db(request: Request) -> SQLiteDB:
    return request.app.state.db  # type: ignore[attr-defined]


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler  # type: ignore[attr-defined]


def get_conn(
    db: SQLiteDB = Depends(get_db),
) -> Generator[sqlite3.Connection, None, None]:
    """
    Provides a per-request SQLite connection.
    """
    conn = db.connect()
    try:
        yield conn
    finally:
        conn.close()


def get_repo(
    conn: sqlite3.Connection = Depends(get_conn),
) -> ReleaseRepo:
    return ReleaseRepo(conn)


def require_api_key(
    settings: Settings = Depends(get_settings),
    x_api_key: Optional[str] = Header(default=None),
) -> None:
    """
    Enforces the x-api-key header when RELEASER_API_KEY is configured.
    """
    if settings.api_key is None:
        return
    if x_api_key is None or not hmac.compare_digest(x_api_key.encode(), settings.api_key.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid or missing API key")
