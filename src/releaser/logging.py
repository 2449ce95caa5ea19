from __future__ import annotations

import logging
import sys
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s"

_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,  # uvicorn accepts "trace"; stdlib has no such level
}


def configure_logging(log_level: str = "info") -> None:
    """
    Configures root logging for the service.

    Release executors run on their own threads, so the thread name is part
    of every line. Calling this twice (app reload, tests) replaces the
    previous stdout handler instead of stacking a second one.
    """
    level = _LEVELS.get(log_level.lower().strip(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        if getattr(h, "_releaser_handler", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    handler._releaser_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # Request lines are noise next to release lifecycle events.
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))
    logging.getLogger("uvicorn.error").setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else "releaser")
