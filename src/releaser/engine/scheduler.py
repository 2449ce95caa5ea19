# src/releaser/engine/scheduler.py
from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from releaser.logging import get_logger
from releaser.storage import ClaimResult, ReleaseRepo, SQLiteDB

from .executor import Executor
from .recovery import run_recovery

_LOG = get_logger(__name__)

# Bound on the terminal write of an aborted release during stop().
_ABORT_RECORD_S = 10.0


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Runtime config for the drain loop and the executor it drives.
    """
    script_path: Path
    release_timeout_ms: int = 30 * 60 * 1000
    grace_ms: int = 5_000
    tick_ms: int = 5_000
    write_retry_ms: int = 500

    @property
    def tick_s(self) -> float:
        return self.tick_ms / 1000.0


class Scheduler:
    """
    Single-flight release scheduler.

    - start(): recovery, then one drain, then a periodic tick thread
    - trigger(): claim a commit; on the fast path launch it right away
    - drain_once(): start the queue head if nothing is running

    Concurrency semantics:
    - "A release is running" is a fact of the ledger (a RUNNING record),
      decided by transactional claim/dequeue. The in-process active marker
      only turns redundant drains into no-ops while this process is busy.
    - An executor clears the marker after its terminal write, then drains,
      so the next start always follows the previous outcome.
    """

    def __init__(self, db: SQLiteDB, cfg: SchedulerConfig, executor: Optional[Executor] = None) -> None:
        if cfg.tick_ms <= 0:
            raise ValueError("tick_ms must be > 0")

        self._db = db
        self._cfg = cfg

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._executor = executor or Executor(
            db,
            cfg.script_path,
            timeout_s=cfg.release_timeout_ms / 1000.0,
            grace_s=cfg.grace_ms / 1000.0,
            write_retry_s=cfg.write_retry_ms / 1000.0,
            stop_event=self._stop,
        )

        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._drain_requested = False
        self._active: Optional[str] = None
        self._active_thread: Optional[threading.Thread] = None

    @property
    def active_commit(self) -> Optional[str]:
        with self._state_lock:
            return self._active

    def start(self) -> None:
        """
        Starts the scheduler. Safe to call once.
        """
        if self._thread and self._thread.is_alive():
            return

        _LOG.info(
            "Starting scheduler: tick_ms=%d timeout_ms=%d grace_ms=%d script=%s",
            self._cfg.tick_ms,
            self._cfg.release_timeout_ms,
            self._cfg.grace_ms,
            self._cfg.script_path,
        )
        self._stop.clear()
        self._executor.reset()

        # Nothing may be dequeued before stale RUNNING records are repaired.
        run_recovery(self._db)
        self.drain_once()

        self._thread = threading.Thread(target=self._run_loop, name="releaser-scheduler", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """
        Stops the tick loop and waits (bounded) for an in-flight release.

        A release still running after timeout_s is aborted: its process group
        gets SIGTERM, then SIGKILL after the grace window, and this returns
        only once the child has been reaped. The record ends FAILED, or stays
        RUNNING for recovery if that write cannot be made.
        """
        _LOG.info("Stopping scheduler...")
        self._stop.set()
        deadline = time.monotonic() + timeout_s

        if self._thread:
            self._thread.join(timeout=timeout_s)

        with self._state_lock:
            active_thread = self._active_thread
            active = self._active
        if active_thread is not None and active_thread.is_alive():
            active_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if active_thread.is_alive():
                _LOG.warning("Release %s still running at shutdown; aborting it", active)
                self._executor.abort()
                active_thread.join(timeout=_ABORT_RECORD_S)

        _LOG.info("Scheduler stopped.")

    def trigger(self, commit_sha: str, priority: int = 0) -> ClaimResult:
        """
        Claims commit_sha and launches it immediately if it won the fast path.
        """
        conn = self._db.connect()
        try:
            result = ReleaseRepo(conn).claim(commit_sha, priority, now_ms())
        finally:
            conn.close()

        if result.started:
            self.launch(commit_sha)
        return result

    def launch(self, commit_sha: str) -> None:
        """
        Starts the executor thread for a record that is already RUNNING.
        """
        thread = threading.Thread(
            target=self._execute,
            args=(commit_sha,),
            name=f"release-{commit_sha[:12]}",
            daemon=True,
        )
        with self._state_lock:
            self._active = commit_sha
            self._active_thread = thread
        thread.start()

    def drain_once(self) -> Optional[str]:
        """
        Starts the next queued release if none is running.

        Returns the started commit SHA, or None when there was nothing to do
        (queue empty, a release running, or another drain in progress). A
        call that finds another drain in progress leaves a request behind,
        and the drain holding the lock runs once more before returning.
        """
        started: Optional[str] = None
        with self._state_lock:
            self._drain_requested = True

        while True:
            if not self._drain_lock.acquire(blocking=False):
                _LOG.debug("Drain already in progress, request left for it.")
                return started
            try:
                with self._state_lock:
                    pending = self._drain_requested
                    self._drain_requested = False
                if pending:
                    started = self._start_next() or started
            finally:
                self._drain_lock.release()

            # Pick up requests left while the lock was held.
            with self._state_lock:
                if not self._drain_requested:
                    return started

    def _start_next(self) -> Optional[str]:
        with self._state_lock:
            if self._active is not None:
                return None

        conn = self._db.connect()
        try:
            commit_sha = ReleaseRepo(conn).dequeue_next(now_ms())
        finally:
            conn.close()

        if commit_sha:
            self.launch(commit_sha)
        return commit_sha

    def _run_loop(self) -> None:
        while not self._stop.wait(timeout=self._cfg.tick_s):
            try:
                self.drain_once()
            except Exception:
                _LOG.exception("Drain tick failed (continuing).")

    def _execute(self, commit_sha: str) -> None:
        # Uncaught errors here are process-level faults (see releaser.main).
        try:
            self._executor.execute(commit_sha)
        finally:
            with self._state_lock:
                if self._active == commit_sha:
                    self._active = None

        if self._stop.is_set():
            return
        try:
            self.drain_once()
        except sqlite3.Error:
            _LOG.exception("Drain after %s failed; next tick will retry.", commit_sha)
