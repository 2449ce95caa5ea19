# src/releaser/storage/migrations.py
from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from releaser.logging import get_logger

_LOG = get_logger(__name__)

_SQL_FILE_RE = re.compile(r"^(?P<version>\d+)_[\w-]+\.sql$")

_VERSIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version INTEGER PRIMARY KEY,
  filename TEXT NOT NULL,
  applied_at INTEGER NOT NULL
);
"""


@dataclass(frozen=True)
class SchemaStep:
    version: int
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


def default_migrations_dir() -> Path:
    # Shipped inside the package so the service can start from any cwd.
    return Path(__file__).resolve().parent / "sql"


def apply_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> int:
    """
    Brings the ledger schema up to date and returns how many steps ran.

    Steps are the NNN_name.sql files of migrations_dir, applied in version
    order and recorded in schema_migrations. Each file uses IF NOT EXISTS,
    so two instances starting on the same database converge on one schema.
    """
    source = (migrations_dir or default_migrations_dir()).resolve()
    if not source.is_dir():
        raise FileNotFoundError(f"Migrations dir not found: {source}")

    conn.executescript(_VERSIONS_DDL)
    done = {int(r["version"]) for r in conn.execute("SELECT version FROM schema_migrations;")}

    pending = [s for s in _discover(source) if s.version not in done]
    for step in pending:
        _LOG.info("Applying ledger schema step %03d (%s)", step.version, step.filename)
        conn.executescript(step.path.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT OR IGNORE INTO schema_migrations(version, filename, applied_at) "
            "VALUES (?, ?, CAST(strftime('%s','now') AS INTEGER) * 1000);",
            (step.version, step.filename),
        )

    if pending:
        _LOG.info("Ledger schema at version %d.", pending[-1].version)
    else:
        _LOG.debug("Ledger schema already current.")
    return len(pending)


def _discover(source: Path) -> list[SchemaStep]:
    steps = []
    for path in source.glob("*.sql"):
        match = _SQL_FILE_RE.match(path.name)
        if match:
            steps.append(SchemaStep(version=int(match.group("version")), path=path))
    return sorted(steps, key=lambda s: s.version)
