# src/releaser/api/routes.py
from __future__ import annotations

import sqlite3
import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Response
from fastapi.responses import JSONResponse

from releaser.config import Settings
from releaser.domain.errors import (
    ConflictError,
    NotFoundError,
    ReleaserError,
    ValidationError,
)
from releaser.domain.models import (
    CleanupRequest,
    CleanupResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    QueueRequest,
    QueueResponse,
    QueueStatusResponse,
    StateMetric,
    validate_commit_sha,
)
from releaser.engine import Scheduler
from releaser.logging import get_logger
from releaser.storage import ReleaseRepo, SQLiteDB

from .deps import get_db, get_repo, get_scheduler, get_settings, require_api_key

_LOG = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# /healthcheck stays reachable without an API key (load balancers, liveness checks).
health_router = APIRouter()
router = APIRouter(dependencies=[Depends(require_api_key)])


def now_ms() -> int:
    return int(time.time() * 1000)


def _error_response(err: ReleaserError, http_status: int) -> JSONResponse:
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=http_status, content=payload)


def _parse_days(raw: Optional[str]) -> int:
    if raw is None or raw.strip() == "":
        raise ValidationError("days parameter is required")
    try:
        days = int(raw)
    except ValueError:
        raise ValidationError("days must be a non-negative integer", details={"days": raw}) from None
    if days < 0:
        raise ValidationError("days must be a non-negative integer", details={"days": raw})
    return days


@health_router.get("/healthcheck", response_model=HealthResponse)
def healthcheck(db: SQLiteDB = Depends(get_db)):
    try:
        conn = db.connect()
        try:
            repo = ReleaseRepo(conn)
            return HealthResponse(
                status="OK",
                is_release_running=repo.is_any_running(),
                queue_length=repo.queue_length(),
            )
        finally:
            conn.close()
    except (sqlite3.Error, OSError):
        _LOG.exception("Healthcheck could not reach the ledger.")
        return JSONResponse(status_code=500, content={"status": "ERROR", "error": "Database error"})


@router.post("/queue", response_model=QueueResponse)
def queue_release(
    response: Response,
    payload: Optional[QueueRequest] = Body(default=None),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """
    Trigger a release for a commit.

    200: accepted (started immediately or queued)
    202: a record for this commit already exists; nothing new happens
    """
    try:
        commit_sha = validate_commit_sha(payload.commit_sha if payload else None)
    except ValidationError as e:
        return _error_response(e, 400)

    result = scheduler.trigger(commit_sha, payload.priority)

    if not result.accepted:
        response.status_code = 202
        return QueueResponse(
            state=result.state,
            message=f"Release for commit {commit_sha} exists with status {result.state}",
        )
    if result.queued:
        return QueueResponse(state=result.state, message=f"Release queued for commit {commit_sha}")
    return QueueResponse(state=result.state, message=f"Release started for commit {commit_sha}")


@router.delete("/queue/{commit_sha}", response_model=MessageResponse)
def cancel_release(
    commit_sha: str,
    repo: ReleaseRepo = Depends(get_repo),
):
    """
    Remove a queued release. Running and finished releases are never removed.
    """
    try:
        commit_sha = validate_commit_sha(commit_sha)
        repo.cancel(commit_sha)
    except ValidationError as e:
        return _error_response(e, 400)
    except NotFoundError as e:
        return _error_response(e, 404)
    except ConflictError as e:
        return _error_response(e, 409)
    return MessageResponse(message=f"Release for commit {commit_sha} removed from queue")


@router.get("/queue", response_model=QueueStatusResponse)
def queue_status(repo: ReleaseRepo = Depends(get_repo)):
    queue = repo.list_queue()
    return QueueStatusResponse(
        is_running=repo.is_any_running(),
        queue_length=len(queue),
        queue=queue,
    )


@router.get("/release/{commit_sha}", response_model=None)
def get_release(
    commit_sha: str,
    repo: ReleaseRepo = Depends(get_repo),
):
    try:
        commit_sha = validate_commit_sha(commit_sha)
    except ValidationError as e:
        return _error_response(e, 400)

    release = repo.get_release(commit_sha)
    if release is None:
        return {}
    return release.model_dump(mode="json", by_alias=True)


@router.get("/metrics", response_model=list[StateMetric])
def metrics(
    days: Optional[str] = Query(default=None),
    repo: ReleaseRepo = Depends(get_repo),
):
    """
    Per-state count and average duration for releases queued in the last N days.
    """
    try:
        window = _parse_days(days)
    except ValidationError as e:
        return _error_response(e, 400)
    return repo.metrics(since_ms=now_ms() - window * DAY_MS)


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(
    payload: Optional[CleanupRequest] = Body(default=None),
    repo: ReleaseRepo = Depends(get_repo),
    settings: Settings = Depends(get_settings),
):
    """
    Delete finished releases queued more than `days` days ago.
    """
    days = payload.days if payload and payload.days is not None else settings.cleanup_days
    deleted = repo.purge_terminal(older_than_ms=now_ms() - days * DAY_MS)
    _LOG.info("Cleaned up %d release record(s) older than %d days", deleted, days)
    return CleanupResponse(
        message=f"Cleanup completed for releases older than {days} days",
        deleted=deleted,
    )
