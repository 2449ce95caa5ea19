from __future__ import annotations

import re
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .states import ReleaseState

COMMIT_SHA_RE = re.compile(r"[a-f0-9]{7,40}", re.IGNORECASE)


def validate_commit_sha(commit_sha: Optional[str]) -> str:
    """
    Returns the normalized (lower-case) commit SHA or raises ValidationError.
    """
    if not commit_sha:
        raise ValidationError("Commit SHA is required")
    if not isinstance(commit_sha, str) or not COMMIT_SHA_RE.fullmatch(commit_sha):
        raise ValidationError("Invalid commit SHA format", details={"commitSha": str(commit_sha)})
    return commit_sha.lower()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueueRequest(_CamelModel):
    """
    API input model for triggering a release.

    commitSha is optional at the schema level so a missing value is reported
    with the same 400 as a malformed one.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    commit_sha: Optional[str] = None
    priority: Annotated[int, Field(ge=-1000, le=1000)] = 0


class QueueResponse(_CamelModel):
    state: ReleaseState
    message: str


class MessageResponse(_CamelModel):
    message: str


class ReleaseView(_CamelModel):
    """
    API output model for a single ledger record.
    """
    commit_sha: str
    state: ReleaseState
    priority: int
    queued_at: int
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    exit_code: Optional[int] = None


class QueueEntry(_CamelModel):
    commit_sha: str
    queued_at: int
    priority: int


class QueueStatusResponse(_CamelModel):
    is_running: bool
    queue_length: int
    queue: list[QueueEntry]


class StateMetric(_CamelModel):
    state: ReleaseState
    count: int
    avg_duration_minutes: Optional[float] = None


class CleanupRequest(_CamelModel):
    days: Optional[Annotated[int, Field(ge=0)]] = None


class CleanupResponse(_CamelModel):
    message: str
    deleted: int


class HealthResponse(_CamelModel):
    status: str
    is_release_running: bool
    queue_length: int


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)
