# src/releaser/domain/states.py
from __future__ import annotations

from enum import StrEnum


class ReleaseState(StrEnum):
    """
    States stored in the ledger, one per commit.

    Transitions only move forward:
      QUEUED -> RUNNING -> {SUCCESS, FAILED, TIMEOUT}

    A record may also be created directly in RUNNING when nothing else is
    running at claim time. At most one record is RUNNING at any instant.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


TERMINAL_STATES = frozenset({ReleaseState.SUCCESS, ReleaseState.FAILED, ReleaseState.TIMEOUT})
