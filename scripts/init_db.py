#!/usr/bin/env python3
"""
Creates (or upgrades) the release ledger without starting the service.
"""
from __future__ import annotations

from releaser.config import load_settings
from releaser.logging import configure_logging, get_logger
from releaser.storage import SQLiteDB, apply_migrations


def main() -> int:
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    db = SQLiteDB(settings.db_path)
    conn = db.connect()
    try:
        applied = apply_migrations(conn)
    finally:
        conn.close()

    log.info("Ledger ready at %s (%d migration(s) applied)", settings.db_path, applied)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
