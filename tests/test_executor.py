# tests/test_executor.py
import os
import sqlite3
import subprocess
import threading
import time
from pathlib import Path

import pytest

import releaser.engine.executor as executor_mod
from helpers import SHA_A, SHA_X, now_ms, wait_until, write_script
from releaser.domain.states import ReleaseState
from releaser.engine import Executor
from releaser.storage import ReleaseRepo, SQLiteDB


def _executor(db: SQLiteDB, script: Path, **kw) -> Executor:
    kw.setdefault("timeout_s", 5.0)
    kw.setdefault("grace_s", 1.0)
    kw.setdefault("write_retry_s", 0.01)
    return Executor(db, script, **kw)


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


def test_exit_zero_records_success(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    script = write_script(tmp_path, "exit 0")

    result = _executor(db, script).execute(SHA_X)

    assert result.state == ReleaseState.SUCCESS
    assert result.exit_code == 0
    assert result.recorded
    rel = repo.get_release(SHA_X)
    assert rel.state == ReleaseState.SUCCESS
    assert rel.exit_code == 0
    assert rel.ended_at is not None and rel.ended_at >= rel.started_at


def test_nonzero_exit_records_failed(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    script = write_script(tmp_path, "echo boom >&2\nexit 3")

    result = _executor(db, script).execute(SHA_X)

    assert result.state == ReleaseState.FAILED
    assert result.exit_code == 3
    rel = repo.get_release(SHA_X)
    assert rel.state == ReleaseState.FAILED
    assert rel.exit_code == 3


def test_commit_is_passed_through_environment(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    out = tmp_path / "seen.txt"
    script = write_script(tmp_path, f'printf "%s" "$RELEASER_GIT_COMMIT_SHA" > "{out}"')

    _executor(db, script).execute(SHA_X)

    assert out.read_text(encoding="utf-8") == SHA_X


def test_missing_script_records_failed(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())

    result = _executor(db, tmp_path / "does-not-exist.sh").execute(SHA_X)

    assert result.state == ReleaseState.FAILED
    assert repo.get_release(SHA_X).state == ReleaseState.FAILED


def test_spawn_error_records_failed(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo, monkeypatch):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())

    def _no_spawn(*args, **kwargs):
        raise FileNotFoundError("bash")

    monkeypatch.setattr(executor_mod.subprocess, "Popen", _no_spawn)

    result = _executor(db, write_script(tmp_path, "exit 0")).execute(SHA_X)

    assert result.state == ReleaseState.FAILED
    assert result.exit_code is None
    rel = repo.get_release(SHA_X)
    assert rel.state == ReleaseState.FAILED
    assert rel.ended_at is not None


def test_timeout_terminates_gracefully(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    pidfile = tmp_path / "pid"
    script = write_script(tmp_path, f'echo $$ > "{pidfile}"\nexec sleep 30')

    t0 = time.monotonic()
    result = _executor(db, script, timeout_s=0.3, grace_s=2.0).execute(SHA_X)
    elapsed = time.monotonic() - t0

    assert result.state == ReleaseState.TIMEOUT
    assert result.exit_code is None
    assert not result.force_killed
    assert elapsed < 2.0
    assert _process_gone(int(pidfile.read_text().strip()))

    rel = repo.get_release(SHA_X)
    assert rel.state == ReleaseState.TIMEOUT
    assert rel.exit_code is None
    assert rel.ended_at is not None


def test_timeout_escalates_to_kill(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    pidfile = tmp_path / "pid"
    script = write_script(
        tmp_path,
        f"trap '' TERM\necho $$ > \"{pidfile}\"\nwhile true; do sleep 0.05; done",
    )

    result = _executor(db, script, timeout_s=0.3, grace_s=0.3).execute(SHA_X)

    assert result.state == ReleaseState.TIMEOUT
    assert result.force_killed
    assert _process_gone(int(pidfile.read_text().strip()))
    assert repo.get_release(SHA_X).state == ReleaseState.TIMEOUT


def test_fast_exit_is_not_a_timeout(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    script = write_script(tmp_path, "sleep 0.1\nexit 0")

    result = _executor(db, script, timeout_s=3.0, grace_s=0.2).execute(SHA_X)

    assert result.state == ReleaseState.SUCCESS
    assert not result.force_killed


def test_failed_terminal_write_is_retried(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo, monkeypatch):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    original_finish = ReleaseRepo.finish
    calls = []

    def _flaky_finish(self, *args, **kwargs):
        calls.append(args)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return original_finish(self, *args, **kwargs)

    monkeypatch.setattr(executor_mod.ReleaseRepo, "finish", _flaky_finish)

    result = _executor(db, write_script(tmp_path, "exit 0")).execute(SHA_X)

    assert result.recorded
    assert len(calls) == 3
    assert repo.get_release(SHA_X).state == ReleaseState.SUCCESS


def test_outcome_not_written_over_existing_terminal(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    repo.finish(SHA_X, ReleaseState.TIMEOUT, now_ms())

    result = _executor(db, write_script(tmp_path, "exit 0")).execute(SHA_X)

    assert result.state == ReleaseState.SUCCESS
    assert not result.recorded
    assert repo.get_release(SHA_X).state == ReleaseState.TIMEOUT


def test_rejects_invalid_durations(db: SQLiteDB, tmp_path: Path):
    with pytest.raises(ValueError):
        Executor(db, tmp_path / "x.sh", timeout_s=0, grace_s=1)
    with pytest.raises(ValueError):
        Executor(db, tmp_path / "x.sh", timeout_s=1, grace_s=0)


def test_popen_is_used_with_bash(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo, monkeypatch):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    seen = {}
    real_popen = subprocess.Popen

    def _spy(args, **kwargs):
        seen["args"] = args
        seen["env"] = kwargs.get("env", {})
        return real_popen(args, **kwargs)

    monkeypatch.setattr(executor_mod.subprocess, "Popen", _spy)
    script = write_script(tmp_path, "exit 0")

    _executor(db, script).execute(SHA_X)

    assert seen["args"] == ["bash", str(script)]
    assert seen["env"]["RELEASER_GIT_COMMIT_SHA"] == SHA_X


def test_abort_stops_running_action_and_records_failed(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    pidfile = tmp_path / "pid"
    script = write_script(tmp_path, f'echo $$ > "{pidfile}"\nsleep 30')
    ex = _executor(db, script, timeout_s=60.0, grace_s=0.5)

    results = []
    worker = threading.Thread(target=lambda: results.append(ex.execute(SHA_X)))
    worker.start()
    assert wait_until(lambda: pidfile.exists() and pidfile.read_text().strip() != "")
    pid = int(pidfile.read_text().strip())

    assert ex.abort(timeout_s=5.0)
    assert _process_gone(pid)

    worker.join(timeout=5.0)
    assert results[0].state == ReleaseState.FAILED
    assert results[0].exit_code is None
    assert repo.get_release(SHA_X).state == ReleaseState.FAILED


def test_aborted_executor_does_not_spawn_until_reset(tmp_path: Path, db: SQLiteDB, repo: ReleaseRepo):
    out = tmp_path / "ran.txt"
    script = write_script(tmp_path, f'echo ran >> "{out}"')
    ex = _executor(db, script)

    assert ex.abort(timeout_s=0.1)

    repo.claim(SHA_X, priority=0, now_ms=now_ms())
    assert ex.execute(SHA_X).state == ReleaseState.FAILED
    assert not out.exists()

    ex.reset()
    repo.claim(SHA_A, priority=0, now_ms=now_ms())
    assert ex.execute(SHA_A).state == ReleaseState.SUCCESS
    assert out.read_text().strip() == "ran"
