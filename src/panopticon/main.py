"""Panopticon daemon - Main entry point."""

from __future__ import annotations

import logging
import signal
import time
from threading import Event

from sqlalchemy.exc import OperationalError

from panopticon.core.config import Settings
from panopticon.core.version import get_version
from panopticon.scanner.orchestrator import ScanOrchestrator
from panopticon.scanner.threading_utils import LogBufferHandler
from panopticon.services.scheduler import MaintenanceScheduler
from panopticon.services.store import ReconciliationStore
from panopticon.utils import configure_logging

STORE_INIT_ATTEMPTS = 5
STORE_INIT_BACKOFF_SECONDS = 0.5


def open_store(settings: Settings, logger: logging.Logger) -> ReconciliationStore:
    """Open the store, retrying with backoff while the database file is busy."""
    for attempt in range(STORE_INIT_ATTEMPTS):
        try:
            return ReconciliationStore(settings)
        except OperationalError as exc:
            if attempt >= STORE_INIT_ATTEMPTS - 1:
                raise
            wait = (attempt + 1) * STORE_INIT_BACKOFF_SECONDS
            logger.warning(
                "Database initialization failed (attempt %d): %s; retrying in %ss",
                attempt + 1,
                exc,
                wait,
            )
            time.sleep(wait)
    raise RuntimeError("unreachable")


def main() -> None:
    settings = Settings()
    log_buffer = LogBufferHandler()
    logger = configure_logging(settings.logging.level, log_buffer)

    logger.info("Panopticon v%s starting...", get_version())
    logger.info("Target network: %s", settings.scanner.target_network)
    logger.info("Database: %s", settings.database.path)

    store = open_store(settings, logger)
    orchestrator = ScanOrchestrator(settings, store)
    orchestrator.start()
    scheduler = MaintenanceScheduler(settings, store, orchestrator, log_buffer)
    scheduler.start()

    stop_event = Event()

    def handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        # Running jobs finish before the store is optimized and closed
        scheduler.shutdown(wait=True)
        try:
            store.optimize_database()
        except Exception:
            logger.exception("Final database optimization failed")
        store.close()
        logger.info("Panopticon stopped")


if __name__ == "__main__":
    main()
