# src/releaser/engine/executor.py
from __future__ import annotations

import os
import signal
import sqlite3
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from releaser.domain.errors import ConflictError, NotFoundError
from releaser.domain.states import ReleaseState
from releaser.logging import get_logger
from releaser.storage import ReleaseRepo, SQLiteDB

_LOG = get_logger(__name__)

COMMIT_ENV_VAR = "RELEASER_GIT_COMMIT_SHA"

_MAX_RETRY_S = 30.0
_ABORT_POLL_S = 0.1


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ExecutionResult:
    commit_sha: str
    state: ReleaseState
    exit_code: Optional[int]
    duration_ms: int
    force_killed: bool = False
    recorded: bool = True


class Executor:
    """
    Runs the release action for one RUNNING record and writes its outcome.

    The child runs in its own session so a timeout can signal the whole
    process group (the script and anything it spawned). Outcome rules:
    - exit status 0 -> SUCCESS, anything else -> FAILED
    - could not spawn -> FAILED
    - still running after the timeout -> SIGTERM, then SIGKILL after the
      grace window -> TIMEOUT

    Popen.wait(timeout) decides the race between natural exit and the
    timeout: exactly one of the two branches produces the outcome. The wait
    runs in short slices so abort() can stop the action on shutdown; an
    aborted release goes through the same termination and ends FAILED.
    """

    def __init__(
        self,
        db: SQLiteDB,
        script_path: Path,
        *,
        timeout_s: float,
        grace_s: float,
        write_retry_s: float = 0.5,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if grace_s <= 0:
            raise ValueError("grace_s must be > 0")

        self._db = db
        self._script_path = script_path
        self._timeout_s = timeout_s
        self._grace_s = grace_s
        self._write_retry_s = write_retry_s
        self._stop = stop_event or threading.Event()
        self._abort = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    def execute(self, commit_sha: str) -> ExecutionResult:
        t0 = time.monotonic()
        state, exit_code, force_killed = self._supervise(commit_sha)
        duration_ms = int((time.monotonic() - t0) * 1000)

        recorded = self._record(commit_sha, state, exit_code)
        _LOG.info(
            "Release %s finished: state=%s exit_code=%s duration=%dms",
            commit_sha,
            state.value,
            exit_code,
            duration_ms,
        )
        return ExecutionResult(
            commit_sha=commit_sha,
            state=state,
            exit_code=exit_code,
            duration_ms=duration_ms,
            force_killed=force_killed,
            recorded=recorded,
        )

    def abort(self, timeout_s: Optional[float] = None) -> bool:
        """
        Stops the release action in flight, if any.

        The supervising thread runs the usual SIGTERM, grace, SIGKILL sequence
        on the process group and records the release as FAILED. Returns True
        once no child of this executor is alive (immediately if idle).
        """
        self._abort.set()
        return self._idle.wait(timeout=timeout_s)

    def reset(self) -> None:
        self._abort.clear()

    # -------------------------
    # Process supervision
    # -------------------------

    def _spawn(self, commit_sha: str) -> subprocess.Popen:
        env = dict(os.environ)
        env[COMMIT_ENV_VAR] = commit_sha
        # stdout/stderr are inherited: operators see the action's output
        # in the service log stream, we don't parse it.
        return subprocess.Popen(
            ["bash", str(self._script_path)],
            env=env,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )

    def _supervise(self, commit_sha: str) -> tuple[ReleaseState, Optional[int], bool]:
        self._idle.clear()
        try:
            if self._abort.is_set():
                _LOG.warning("Release %s not started: executor is shutting down", commit_sha)
                return ReleaseState.FAILED, None, False
            try:
                proc = self._spawn(commit_sha)
            except OSError as e:
                _LOG.error("Could not start release action for %s: %r", commit_sha, e)
                return ReleaseState.FAILED, None, False

            _LOG.info("Started release %s (pid=%d, script=%s)", commit_sha, proc.pid, self._script_path)
            return self._wait(commit_sha, proc)
        finally:
            self._idle.set()

    def _wait(self, commit_sha: str, proc: subprocess.Popen) -> tuple[ReleaseState, Optional[int], bool]:
        deadline = time.monotonic() + self._timeout_s
        while True:
            remaining = deadline - time.monotonic()
            try:
                code = proc.wait(timeout=max(0.0, min(remaining, _ABORT_POLL_S)))
                break
            except subprocess.TimeoutExpired:
                pass

            if self._abort.is_set():
                _LOG.warning("Aborting release %s (pid=%d) on shutdown", commit_sha, proc.pid)
                force_killed = self._terminate(proc)
                return ReleaseState.FAILED, None, force_killed
            if remaining <= _ABORT_POLL_S:
                _LOG.warning("Release %s timed out after %.1fs", commit_sha, self._timeout_s)
                force_killed = self._terminate(proc)
                return ReleaseState.TIMEOUT, None, force_killed

        if code == 0:
            return ReleaseState.SUCCESS, code, False
        return ReleaseState.FAILED, code, False

    def _terminate(self, proc: subprocess.Popen) -> bool:
        """
        Two-phase termination. Returns True if SIGKILL was needed.
        Only returns once the child has been reaped.
        """
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self._grace_s)
            return False
        except subprocess.TimeoutExpired:
            _LOG.warning(
                "Release process %d ignored SIGTERM for %.1fs; sending SIGKILL",
                proc.pid,
                self._grace_s,
            )

        _signal_group(proc, signal.SIGKILL)
        proc.wait()
        return True

    # -------------------------
    # Outcome persistence
    # -------------------------

    def _record(self, commit_sha: str, state: ReleaseState, exit_code: Optional[int]) -> bool:
        """
        Writes the terminal state, retrying store errors with capped backoff.

        Dropping this write would leave the record RUNNING and block the
        queue until the next restart, so it is only abandoned on shutdown.
        """
        delay = self._write_retry_s
        while True:
            try:
                conn = self._db.connect()
                try:
                    ReleaseRepo(conn).finish(commit_sha, state, now_ms(), exit_code=exit_code)
                finally:
                    conn.close()
                return True
            except (ConflictError, NotFoundError) as e:
                _LOG.warning("Outcome %s for %s not recorded: %s", state.value, commit_sha, e)
                return False
            except sqlite3.Error:
                _LOG.exception(
                    "Failed to record outcome %s for %s; retrying in %.1fs",
                    state.value,
                    commit_sha,
                    delay,
                )

            if self._stop.wait(timeout=delay):
                _LOG.error(
                    "Shutting down with outcome of %s unrecorded; recovery will mark it failed",
                    commit_sha,
                )
                return False
            delay = min(delay * 2, _MAX_RETRY_S)


def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
