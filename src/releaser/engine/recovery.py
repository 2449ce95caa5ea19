# src/releaser/engine/recovery.py
from __future__ import annotations

import time

from releaser.logging import get_logger
from releaser.storage import ReleaseRepo, SQLiteDB

_LOG = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def run_recovery(db: SQLiteDB) -> list[str]:
    """
    Crash recovery, run once at startup before anything is dequeued:
    - RUNNING records are leftovers of an unclean shutdown -> FAILED, ended_at=now

    Returns the commit SHAs that were transitioned.
    """
    conn = db.connect()
    try:
        recovered = ReleaseRepo(conn).fail_running(now_ms())
    finally:
        conn.close()

    if recovered:
        _LOG.warning("Recovery marked %d stale running release(s) failed: %s", len(recovered), recovered)
    return recovered
