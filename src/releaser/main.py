from __future__ import annotations

import os
import sys
import threading

from releaser.config import load_settings
from releaser.logging import configure_logging, get_logger


def install_fault_handlers() -> None:
    """
    Makes uncaught errors fatal, on the main thread and on executor threads.

    An uncaught error may leave a RUNNING record behind; the process exits
    and recovery on the next start repairs the ledger.
    """
    log = get_logger("releaser.fault")

    def _excepthook(exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        log.critical("Uncaught exception, terminating.", exc_info=(exc_type, exc, tb))
        os._exit(1)

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        log.critical(
            "Uncaught exception in thread %s, terminating.",
            args.thread.name if args.thread else "?",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        os._exit(1)

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook


def main() -> int:
    """
    Programmatic entrypoint.

    Dev command:
      uvicorn releaser.api.app:app --reload

    Production:
      releaser   (or python -m releaser.main)
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    log.info("Starting releaser with DB path: %s, release script: %s", settings.db_path, settings.script_path)

    install_fault_handlers()

    import uvicorn

    uvicorn.run(
        "releaser.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
