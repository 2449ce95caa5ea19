# src/releaser/storage/__init__.py
"""
Storage layer for the releaser (SQLite).

- db: connection factory + pragmas
- migrations: lightweight SQL migrations runner
- repo: the release ledger (transactional data access)
"""

from .db import SQLiteDB
from .migrations import apply_migrations
from .repo import ClaimResult, ReleaseRepo

__all__ = ["SQLiteDB", "apply_migrations", "ClaimResult", "ReleaseRepo"]
