# src/releaser/api/app.py
from __future__ import annotations

import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from releaser.config import load_settings
from releaser.domain.models import ErrorResponse
from releaser.engine import Scheduler, SchedulerConfig
from releaser.logging import configure_logging, get_logger
from releaser.storage import SQLiteDB, apply_migrations

from .routes import health_router, router

_LOG = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Responsible for:
    - loading settings
    - configuring logging
    - running DB migrations
    - starting the scheduler (recovery + first drain happen inside start())
    - stopping the scheduler on shutdown
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    db = SQLiteDB(settings.db_path)

    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()

    app.state.settings = settings
    app.state.db = db

    cfg = SchedulerConfig(
        script_path=settings.script_path,
        release_timeout_ms=settings.release_timeout_ms,
        grace_ms=settings.grace_ms,
        tick_ms=settings.tick_ms,
        write_retry_ms=settings.write_retry_ms,
    )
    scheduler = Scheduler(db=db, cfg=cfg)
    scheduler.start()
    app.state.scheduler = scheduler

    _LOG.info("Startup complete.")

    try:
        yield
    finally:
        scheduler_obj = getattr(app.state, "scheduler", None)
        if scheduler_obj is not None:
            scheduler_obj.stop(timeout_s=5.0)
        _LOG.info("Shutdown complete.")


def _json_error(status_code: int, error: str, code: str, details: dict | None = None) -> JSONResponse:
    payload = ErrorResponse(error=error, code=code, details=details or {}).model_dump()
    return JSONResponse(status_code=status_code, content=payload)


app = FastAPI(
    title="Releaser",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(health_router)
app.include_router(router)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies and parameters are client errors like any other validation failure.
    return _json_error(
        400,
        "Invalid request",
        "VALIDATION_ERROR",
        {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return _json_error(404, "Not found", "NOT_FOUND")
    if exc.status_code == 401:
        return _json_error(401, str(exc.detail), "UNAUTHORIZED")
    return _json_error(exc.status_code, str(exc.detail), "HTTP_ERROR")


@app.exception_handler(sqlite3.Error)
async def _store_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
    _LOG.error("Ledger error on %s %s: %r", request.method, request.url.path, exc)
    return _json_error(500, "Internal Server Error", "STORE_ERROR")
