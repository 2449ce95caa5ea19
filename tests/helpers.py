# tests/helpers.py
import itertools
import time
from pathlib import Path
from typing import Callable, Optional

from releaser.storage import SQLiteDB, apply_migrations

_counter = itertools.count(1)

SHA_A = "a" * 40
SHA_B = "b" * 40
SHA_C = "c" * 40
SHA_D = "d" * 40
SHA_X = "0123456789abcdef0123456789abcdef01234567"

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS


def now_ms() -> int:
    return int(time.time() * 1000)


def wait_until(fn: Callable[[], bool], timeout_s: float = 5.0, poll_s: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def write_script(directory: Path, body: str, name: Optional[str] = None) -> Path:
    name = name or f"release_{next(_counter)}.sh"
    path = directory / name
    path.write_text("#!/usr/bin/env bash\n" + body + "\n", encoding="utf-8")
    return path


def gated_script(directory: Path, gate: Path, log: Optional[Path] = None) -> Path:
    """
    Script that appends its commit to `log` (if given) and blocks until `gate`
    exists. The wait is bounded so no stray process outlives a failed test.
    """
    lines = []
    if log is not None:
        lines.append(f'echo "$RELEASER_GIT_COMMIT_SHA" >> "{log}"')
    lines.append(f'for i in $(seq 1 400); do [ -f "{gate}" ] && exit 0; sleep 0.025; done; exit 1')
    return write_script(directory, "\n".join(lines))


def init_db(db_path: Path) -> SQLiteDB:
    db = SQLiteDB(db_path)
    conn = db.connect()
    try:
        apply_migrations(conn)
    finally:
        conn.close()
    return db


def insert_release(
    db: SQLiteDB,
    commit_sha: str,
    state: str,
    *,
    queued_at: int,
    started_at: Optional[int] = None,
    ended_at: Optional[int] = None,
    priority: int = 0,
) -> None:
    conn = db.connect()
    try:
        conn.execute(
            """
            INSERT INTO releases(commit_sha, state, priority, queued_at, started_at, ended_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (commit_sha, state, priority, queued_at, started_at, ended_at),
        )
    finally:
        conn.close()


def count_rows(db: SQLiteDB, where: str = "1=1", params: tuple = ()) -> int:
    conn = db.connect()
    try:
        row = conn.execute(f"SELECT COUNT(*) AS c FROM releases WHERE {where};", params).fetchone()
        return int(row["c"])
    finally:
        conn.close()


def read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    return [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
