"""Background scheduler for scans and database maintenance."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from panopticon.core.config import Settings
from panopticon.scanner.orchestrator import ScanAlreadyRunningError, ScanFailedError
from panopticon.services.store import ReconciliationStore

if TYPE_CHECKING:
    from panopticon.scanner.orchestrator import ScanOrchestrator
    from panopticon.scanner.threading_utils import LogBufferHandler

logger = logging.getLogger(__name__)

RETENTION_INTERVAL = timedelta(hours=24)
LOG_FLUSH_INTERVAL = timedelta(seconds=5)


class MaintenanceScheduler:
    """Fixed-interval triggers for scans, retention, backup, optimize and log flushing."""

    def __init__(
        self,
        settings: Settings,
        store: ReconciliationStore,
        orchestrator: ScanOrchestrator,
        log_buffer: LogBufferHandler | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.log_buffer = log_buffer
        self.scheduler = BackgroundScheduler(timezone=timezone.utc)

    def _add_interval_job(self, func, interval: timedelta, job_id: str, **kwargs) -> None:
        self.scheduler.add_job(
            func,
            IntervalTrigger(seconds=interval.total_seconds(), timezone=timezone.utc),
            id=job_id,
            max_instances=1,
            coalesce=True,
            **kwargs,
        )

    def start(self, paused: bool = False) -> None:
        """Register all jobs and start the scheduler thread."""
        if self.settings.scanner.enable_scheduler:
            self._add_interval_job(
                self.run_scheduled_scan,
                self.settings.scanner.frequency,
                "scan",
                next_run_time=datetime.now(timezone.utc),
            )
            logger.info("Scheduled scans every %s", self.settings.scanner.frequency)
        else:
            logger.info("Scheduled scans disabled")

        self._add_interval_job(self.run_retention, RETENTION_INTERVAL, "retention")
        self._add_interval_job(self.run_backup, self.settings.database.backup_frequency, "backup")
        self._add_interval_job(
            self.run_optimize, self.settings.database.optimize_frequency, "optimize"
        )
        if self.log_buffer is not None:
            self._add_interval_job(self.flush_logs, LOG_FLUSH_INTERVAL, "flush-logs")

        self.scheduler.start(paused=paused)
        logger.info("Maintenance scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the scheduler and persist any buffered log entries.

        With ``wait`` set, running jobs finish before this returns, so the
        store can be optimized and closed afterwards.
        """
        if self.scheduler.running:
            logger.info("Stopping maintenance scheduler")
            self.scheduler.shutdown(wait=wait)
            logger.info("Maintenance scheduler stopped")
        if self.log_buffer is not None:
            self.flush_logs()

    def run_scheduled_scan(self) -> None:
        try:
            self.orchestrator.run_scan()
        except ScanAlreadyRunningError:
            logger.info("Skipping scheduled scan: a scan is already running")
        except ScanFailedError as exc:
            logger.error("Scheduled scan %s failed: %s", exc.scan_id, exc)
        except Exception:
            logger.exception("Scheduled scan failed")

    def run_retention(self) -> None:
        try:
            removed = self.store.clean_old_data(self.settings.database.data_retention_days)
            logger.info("Retention removed %d rows", removed)
            self.orchestrator.clean()
        except Exception:
            logger.exception("Data retention failed")

    def run_backup(self) -> None:
        try:
            self.store.backup_database()
        except Exception:
            logger.exception("Database backup failed")

    def run_optimize(self) -> None:
        try:
            self.store.optimize_database()
        except Exception:
            logger.exception("Database optimization failed")

    def flush_logs(self) -> None:
        """Persist buffered log entries, requeueing them if the write fails."""
        if self.log_buffer is None:
            return
        entries = self.log_buffer.drain()
        if not entries:
            return
        try:
            self.store.add_log_entries(entries)
        except Exception as exc:
            self.log_buffer.requeue(entries)
            logger.warning("Failed to persist %d log entries: %s", len(entries), exc)
