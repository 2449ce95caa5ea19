# src/releaser/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ReleaserError(Exception):
    """
    Base domain error.

    The API layer maps these to HTTP responses consistently.
    """
    message: str
    code: str = "RELEASER_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(ReleaserError):
    code: str = "VALIDATION_ERROR"


@dataclass
class NotFoundError(ReleaserError):
    code: str = "NOT_FOUND"


@dataclass
class ConflictError(ReleaserError):
    code: str = "CONFLICT"
