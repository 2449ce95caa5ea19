# src/releaser/api/__init__.py
"""
API layer for the releaser (FastAPI).

- app: FastAPI instance + lifecycle hooks + error mapping
- routes: REST endpoints
- deps: dependency injection helpers
"""

from .app import app

__all__ = ["app"]
