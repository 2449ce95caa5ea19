# src/releaser/storage/repo.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from releaser.domain.errors import ConflictError, NotFoundError
from releaser.domain.models import QueueEntry, ReleaseView, StateMetric
from releaser.domain.states import TERMINAL_STATES, ReleaseState
from releaser.logging import get_logger

from .db import begin_immediate, commit, rollback

_LOG = get_logger(__name__)

_TERMINAL_SQL = ",".join(f"'{s.value}'" for s in sorted(TERMINAL_STATES))

_RELEASE_COLUMNS = "commit_sha, state, priority, queued_at, started_at, ended_at, exit_code"


@dataclass(frozen=True)
class ClaimResult:
    """
    Outcome of a claim.

    accepted: a new record was created (either RUNNING or QUEUED)
    queued:   the new record is waiting in the queue
    existing_state: state of the record that already existed, if any
    """
    accepted: bool
    queued: bool
    existing_state: Optional[ReleaseState] = None

    @property
    def state(self) -> ReleaseState:
        if self.existing_state is not None:
            return self.existing_state
        return ReleaseState.QUEUED if self.queued else ReleaseState.RUNNING

    @property
    def started(self) -> bool:
        return self.accepted and not self.queued


@dataclass
class ReleaseRepo:
    """
    The release ledger. Encapsulates all SQL access.

    Important invariants:
    - One record per commit_sha (UNIQUE), so re-triggering is idempotent.
    - At most one RUNNING record; every transition into RUNNING happens inside
      BEGIN IMMEDIATE after checking that none exists, and a partial unique
      index backs this up at the storage level.
    - Transitions are guarded UPDATEs (WHERE state = <expected>), so a record
      never moves backwards out of a terminal state.
    """
    conn: sqlite3.Connection

    # -------------------------
    # Read operations
    # -------------------------

    def get_release(self, commit_sha: str) -> Optional[ReleaseView]:
        row = self.conn.execute(
            f"SELECT {_RELEASE_COLUMNS} FROM releases WHERE commit_sha = ?;",
            (commit_sha,),
        ).fetchone()
        if not row:
            return None
        return _to_view(row)

    def get_state(self, commit_sha: str) -> Optional[ReleaseState]:
        row = self.conn.execute(
            "SELECT state FROM releases WHERE commit_sha = ?;", (commit_sha,)
        ).fetchone()
        return ReleaseState(row["state"]) if row else None

    def running_commit(self) -> Optional[str]:
        row = self.conn.execute(
            "SELECT commit_sha FROM releases WHERE state = ? LIMIT 1;",
            (ReleaseState.RUNNING.value,),
        ).fetchone()
        return row["commit_sha"] if row else None

    def is_any_running(self) -> bool:
        return self.running_commit() is not None

    def list_queue(self) -> list[QueueEntry]:
        """
        Queued records in the order they will be started.
        """
        rows = self.conn.execute(
            """
            SELECT commit_sha, queued_at, priority
            FROM releases
            WHERE state = ?
            ORDER BY priority DESC, queued_at ASC, id ASC;
            """,
            (ReleaseState.QUEUED.value,),
        ).fetchall()
        return [
            QueueEntry(commit_sha=r["commit_sha"], queued_at=r["queued_at"], priority=r["priority"])
            for r in rows
        ]

    def queue_length(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM releases WHERE state = ?;",
            (ReleaseState.QUEUED.value,),
        ).fetchone()
        return int(row["c"])

    def metrics(self, since_ms: int) -> list[StateMetric]:
        """
        Per-state count and average run duration (minutes) for records
        queued at or after since_ms. Records that never started or never
        ended don't contribute to the average.
        """
        rows = self.conn.execute(
            """
            SELECT state,
                   COUNT(*) AS c,
                   AVG(
                     CASE
                       WHEN started_at IS NOT NULL AND ended_at IS NOT NULL
                         THEN (ended_at - started_at) / 60000.0
                       ELSE NULL
                     END
                   ) AS avg_minutes
            FROM releases
            WHERE queued_at >= ?
            GROUP BY state
            ORDER BY state ASC;
            """,
            (since_ms,),
        ).fetchall()
        return [
            StateMetric(
                state=ReleaseState(r["state"]),
                count=int(r["c"]),
                avg_duration_minutes=r["avg_minutes"],
            )
            for r in rows
        ]

    # -------------------------
    # Write operations
    # -------------------------

    def claim(self, commit_sha: str, priority: int, now_ms: int) -> ClaimResult:
        """
        Decides atomically what happens to a trigger request.

        - Record exists: report its state, create nothing.
        - Nothing RUNNING: insert directly as RUNNING (fast path).
        - Otherwise: insert as QUEUED with the given priority.
        """
        try:
            begin_immediate(self.conn)

            existing = self.conn.execute(
                "SELECT state FROM releases WHERE commit_sha = ?;", (commit_sha,)
            ).fetchone()
            if existing:
                commit(self.conn)
                return ClaimResult(accepted=False, queued=False, existing_state=ReleaseState(existing["state"]))

            if self._running_exists():
                self.conn.execute(
                    """
                    INSERT INTO releases(commit_sha, state, priority, queued_at)
                    VALUES (?, ?, ?, ?);
                    """,
                    (commit_sha, ReleaseState.QUEUED.value, priority, now_ms),
                )
                result = ClaimResult(accepted=True, queued=True)
            else:
                self.conn.execute(
                    """
                    INSERT INTO releases(commit_sha, state, priority, queued_at, started_at)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    (commit_sha, ReleaseState.RUNNING.value, priority, now_ms, now_ms),
                )
                result = ClaimResult(accepted=True, queued=False)

            commit(self.conn)
        except sqlite3.IntegrityError:
            # Lost a race against a writer that bypassed the immediate lock;
            # the uniqueness constraint picked the winner.
            rollback(self.conn)
            state = self.get_state(commit_sha)
            if state is None:
                raise
            return ClaimResult(accepted=False, queued=False, existing_state=state)
        except Exception:
            rollback(self.conn)
            raise

        _LOG.info(
            "Claimed %s: %s (priority=%d)",
            commit_sha,
            "queued" if result.queued else "running",
            priority,
        )
        return result

    def dequeue_next(self, now_ms: int) -> Optional[str]:
        """
        Atomically moves the head of the queue to RUNNING.

        Returns the commit SHA that was started, or None when the queue is
        empty or a release is already running.
        """
        try:
            begin_immediate(self.conn)

            if self._running_exists():
                commit(self.conn)
                return None

            row = self.conn.execute(
                """
                SELECT commit_sha
                FROM releases
                WHERE state = ?
                ORDER BY priority DESC, queued_at ASC, id ASC
                LIMIT 1;
                """,
                (ReleaseState.QUEUED.value,),
            ).fetchone()
            if not row:
                commit(self.conn)
                return None

            commit_sha = row["commit_sha"]
            self.conn.execute(
                """
                UPDATE releases
                SET state = ?,
                    started_at = MAX(?, queued_at)
                WHERE commit_sha = ?
                  AND state = ?;
                """,
                (ReleaseState.RUNNING.value, now_ms, commit_sha, ReleaseState.QUEUED.value),
            )

            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise

        _LOG.info("Dequeued %s for release", commit_sha)
        return commit_sha

    def cancel(self, commit_sha: str) -> None:
        """
        Deletes a QUEUED record. Anything else is left untouched.

        Raises NotFoundError if there is no record, ConflictError (with the
        actual state in details) if it is not QUEUED.
        """
        try:
            begin_immediate(self.conn)

            row = self.conn.execute(
                "SELECT state FROM releases WHERE commit_sha = ?;", (commit_sha,)
            ).fetchone()
            if not row:
                raise NotFoundError(
                    f"Release for commit {commit_sha} not found",
                    details={"commitSha": commit_sha},
                )
            if row["state"] != ReleaseState.QUEUED.value:
                raise ConflictError(
                    "Can only cancel queued releases",
                    details={"commitSha": commit_sha, "state": row["state"]},
                )

            self.conn.execute(
                "DELETE FROM releases WHERE commit_sha = ? AND state = ?;",
                (commit_sha, ReleaseState.QUEUED.value),
            )
            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise

        _LOG.info("Cancelled queued release %s", commit_sha)

    def finish(
        self,
        commit_sha: str,
        state: ReleaseState,
        now_ms: int,
        exit_code: Optional[int] = None,
    ) -> None:
        """
        Writes the terminal outcome of a RUNNING record.

        Raises ConflictError if the record is no longer RUNNING (someone else
        already wrote an outcome), NotFoundError if it vanished.
        """
        if state not in TERMINAL_STATES:
            raise ValueError(f"finish() requires a terminal state, got {state!r}")

        try:
            begin_immediate(self.conn)

            updated = self.conn.execute(
                """
                UPDATE releases
                SET state = ?,
                    ended_at = MAX(?, COALESCE(started_at, queued_at)),
                    exit_code = ?
                WHERE commit_sha = ?
                  AND state = ?;
                """,
                (state.value, now_ms, exit_code, commit_sha, ReleaseState.RUNNING.value),
            ).rowcount

            if updated == 0:
                row = self.conn.execute(
                    "SELECT state FROM releases WHERE commit_sha = ?;", (commit_sha,)
                ).fetchone()
                if not row:
                    raise NotFoundError(
                        f"Release for commit {commit_sha} not found",
                        details={"commitSha": commit_sha},
                    )
                raise ConflictError(
                    "Release is not running; cannot record outcome",
                    details={"commitSha": commit_sha, "state": row["state"]},
                )

            commit(self.conn)
        except Exception:
            rollback(self.conn)
            raise

    def fail_running(self, now_ms: int) -> list[str]:
        """
        Marks every RUNNING record FAILED. Only valid at startup, before this
        process has launched anything: a RUNNING record then can only be the
        leftover of an unclean shutdown.

        Returns the affected commit SHAs.
        """
        try:
            begin_immediate(self.conn)

            rows = self.conn.execute(
                "SELECT commit_sha FROM releases WHERE state = ?;",
                (ReleaseState.RUNNING.value,),
            ).fetchall()

            self.conn.execute(
                """
                UPDATE releases
                SET state = ?,
                    ended_at = MAX(?, COALESCE(started_at, queued_at))
                WHERE state = ?;
                """,
                (ReleaseState.FAILED.value, now_ms, ReleaseState.RUNNING.value),
            )

            commit(self.conn)
            return [r["commit_sha"] for r in rows]
        except Exception:
            rollback(self.conn)
            raise

    def purge_terminal(self, older_than_ms: int) -> int:
        """
        Retention sweep: deletes terminal records queued before older_than_ms.
        QUEUED and RUNNING records are never touched.
        """
        try:
            begin_immediate(self.conn)
            deleted = self.conn.execute(
                f"""
                DELETE FROM releases
                WHERE queued_at < ?
                  AND state IN ({_TERMINAL_SQL});
                """,
                (older_than_ms,),
            ).rowcount
            commit(self.conn)
            return int(deleted)
        except Exception:
            rollback(self.conn)
            raise

    # -------------------------
    # Helpers
    # -------------------------

    def _running_exists(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM releases WHERE state = ? LIMIT 1;",
            (ReleaseState.RUNNING.value,),
        ).fetchone()
        return row is not None


def _to_view(row: sqlite3.Row) -> ReleaseView:
    return ReleaseView(
        commit_sha=row["commit_sha"],
        state=ReleaseState(row["state"]),
        priority=row["priority"],
        queued_at=row["queued_at"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        exit_code=row["exit_code"],
    )
