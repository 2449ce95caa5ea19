"""
Domain layer for the releaser.

- states: ReleaseState enum
- models: Pydantic models for API input/output, commit SHA validation
- errors: domain-level exceptions
"""

from .states import TERMINAL_STATES, ReleaseState
from .models import (
    CleanupRequest,
    CleanupResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    QueueEntry,
    QueueRequest,
    QueueResponse,
    QueueStatusResponse,
    ReleaseView,
    StateMetric,
    validate_commit_sha,
)
from .errors import (
    ReleaserError,
    ValidationError,
    NotFoundError,
    ConflictError,
)

__all__ = [
    "ReleaseState",
    "TERMINAL_STATES",
    "QueueRequest",
    "QueueResponse",
    "MessageResponse",
    "ReleaseView",
    "QueueEntry",
    "QueueStatusResponse",
    "StateMetric",
    "CleanupRequest",
    "CleanupResponse",
    "HealthResponse",
    "ErrorResponse",
    "validate_commit_sha",
    "ReleaserError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
]
