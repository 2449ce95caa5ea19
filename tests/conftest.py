# tests/conftest.py
import importlib
import itertools
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from helpers import init_db, write_script
from releaser.storage import ReleaseRepo, SQLiteDB

_counter = itertools.count(1)

DEFAULT_ENV = {
    "RELEASER_TICK_MS": "50",
    "RELEASER_TIMEOUT_MS": "10000",
    "RELEASER_GRACE_MS": "500",
    "RELEASER_WRITE_RETRY_MS": "20",
    "RELEASER_CLEANUP_DAYS": "30",
    "RELEASER_LOG_LEVEL": "warning",
}


def _apply_env(
    monkeypatch: pytest.MonkeyPatch,
    db_path: Path,
    script_path: Path,
    overrides: Optional[dict[str, str]] = None,
) -> None:
    monkeypatch.setenv("RELEASER_DB_PATH", str(db_path))
    monkeypatch.setenv("RELEASER_SCRIPT_PATH", str(script_path))
    monkeypatch.delenv("RELEASER_API_KEY", raising=False)
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    *,
    overrides: Optional[dict[str, str]] = None,
    db_path: Optional[Path] = None,
    script_path: Optional[Path] = None,
) -> Iterator[TestClient]:
    # Unique DB per client instance unless one is provided
    if db_path is None:
        db_path = tmp_path / f"releases_{next(_counter)}.db"
    if script_path is None:
        script_path = write_script(tmp_path, "exit 0")

    _apply_env(monkeypatch, db_path, script_path, overrides)

    # Import after env is set; reload to avoid cross-test state
    app_mod = importlib.import_module("releaser.api.app")
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Default integration test client: fresh ledger, release action exits 0.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def client_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Factory for tests that need a custom release script, settings or a
    pre-populated ledger.

    Usage:
      with client_factory(script_path=gated, overrides={"RELEASER_API_KEY": "k"}) as client:
          ...

      with client_factory(db_path=some_existing_db_path) as client:
          ...
    """

    def _make(
        *,
        overrides: Optional[dict[str, str]] = None,
        db_path: Optional[Path] = None,
        script_path: Optional[Path] = None,
    ):
        return _client_ctx(
            monkeypatch,
            tmp_path,
            overrides=overrides,
            db_path=db_path,
            script_path=script_path,
        )

    return _make


@pytest.fixture()
def db(tmp_path: Path) -> SQLiteDB:
    """
    Migrated ledger on a temp file, no scheduler attached.
    """
    return init_db(tmp_path / "ledger.db")


@pytest.fixture()
def repo(db: SQLiteDB) -> Iterator[ReleaseRepo]:
    conn = db.connect()
    try:
        yield ReleaseRepo(conn)
    finally:
        conn.close()
