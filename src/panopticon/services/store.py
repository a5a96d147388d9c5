"""Reconciliation store: the single owner of the persisted inventory.

Every mutation takes the store-wide write lock before opening its
transaction, because SQLite admits one writer at a time. The lock is the
concurrency boundary and the transaction is the atomicity boundary. Reads
take no lock and see the last committed state.

Read methods return pydantic schemas, never ORM objects, so nothing handed
out outlives the session it was loaded in.
"""

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from panopticon.core.config import Settings
from panopticon.core.database import create_db_engine, create_session_factory, init_db
from panopticon.models.change import ChangeType
from panopticon.models.scan import ScanStatus
from panopticon.scanner.models import HostObservation, LogEntry, PortObservation
from panopticon.schemas.change import ChangeResponse, LogEntryResponse
from panopticon.schemas.device import DeviceDetails, DeviceResponse, PortResponse
from panopticon.schemas.scan import ScanResponse
from panopticon.schemas.stats import DatabaseStats
from panopticon.services import changes, devices, logs, maintenance, ports, scans

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.1
BUSY_MARKERS = ("database is locked", "busy")


def is_busy_error(exc: BaseException) -> bool:
    """Return True for transient SQLite lock contention errors."""
    message = str(exc).lower()
    return any(marker in message for marker in BUSY_MARKERS)


def execute_with_retry(
    operation: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> T:
    """
    Run ``operation``, retrying transient "locked"/"busy" errors.

    The delay doubles after every failed attempt. Errors that are not lock
    contention propagate immediately; the last contention error is re-raised
    once all attempts are used.
    """
    delay = retry_delay
    for attempt in range(1, max_retries + 1):
        try:
            return operation()
        except OperationalError as exc:
            if not is_busy_error(exc) or attempt >= max_retries:
                raise
            logger.warning(
                "Database busy (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_retries,
                delay,
                exc,
            )
            time.sleep(delay)
            delay *= 2
    raise ValueError("max_retries must be at least 1")


def _device_response(device, port_count: int | None = None) -> DeviceResponse:
    response = DeviceResponse.model_validate(device)
    if port_count is not None:
        response.port_count = port_count
    return response


class ReconciliationStore:
    """Persistent device, port, scan, change and log storage on SQLite."""

    def __init__(self, settings: Settings) -> None:
        self.db_path = Path(settings.database.path)
        self.engine = create_db_engine(self.db_path, echo=settings.database.echo)
        self.session_factory = create_session_factory(self.engine)
        self._write_lock = Lock()
        init_db(self.engine)

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._write_lock:
            with self.session_factory.begin() as db:
                yield db

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> T:
        """Run a store operation with retries on lock contention."""
        return execute_with_retry(operation, max_retries, retry_delay)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def upsert_device(self, observation: HostObservation, *, scan_id: int | None = None) -> int:
        """Merge an observed host and return its device id."""
        with self._transaction() as db:
            device, _ = devices.upsert_device(db, observation, scan_id=scan_id)
            return device.id

    def upsert_port(
        self,
        device_id: int,
        observation: PortObservation,
        *,
        scan_id: int | None = None,
        observed_at: datetime | None = None,
    ) -> int:
        """Merge an observed open port of a device and return its port id."""
        with self._transaction() as db:
            port, _ = ports.upsert_port(
                db, device_id, observation, scan_id=scan_id, observed_at=observed_at
            )
            return port.id

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def create_scan(self, template: str, *, timestamp: datetime | None = None) -> int:
        """Create a running scan record and return its id."""
        with self._transaction() as db:
            scan = scans.create_scan(db, template, timestamp=timestamp)
            return scan.id

    def update_scan(
        self,
        scan_id: int,
        status: ScanStatus | str,
        devices_found: int,
        ports_found: int,
        duration: timedelta | float,
        error_message: str | None = None,
    ) -> None:
        """Record the final state of a scan."""
        with self._transaction() as db:
            scan = scans.update_scan(
                db, scan_id, status, devices_found, ports_found, duration, error_message
            )
        if scan is None:
            logger.warning("Cannot update scan %s: not found", scan_id)

    def get_scan(self, scan_id: int) -> ScanResponse | None:
        """Get a scan by id."""
        with self.session_factory() as db:
            scan = scans.get_scan(db, scan_id)
            return ScanResponse.model_validate(scan) if scan else None

    def get_recent_scans(self, limit: int = 10) -> list[ScanResponse]:
        """Get the most recent scans, newest first."""
        with self.session_factory() as db:
            return [ScanResponse.model_validate(scan) for scan in scans.get_recent_scans(db, limit)]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, device_id: int) -> DeviceResponse | None:
        """Get a device with its port count."""
        with self.session_factory() as db:
            device = devices.get_device(db, device_id)
            if device is None:
                return None
            return _device_response(device, devices.count_ports(db, device.id))

    def get_device_by_ip(self, ip_address: str) -> DeviceResponse | None:
        """Get the most recently seen device with an IP address."""
        with self.session_factory() as db:
            device = devices.get_device_by_ip(db, ip_address)
            if device is None:
                return None
            return _device_response(device, devices.count_ports(db, device.id))

    def get_device_details(self, device_id: int) -> DeviceDetails | None:
        """Get a device together with its ports ordered by port number."""
        with self.session_factory() as db:
            device = devices.get_device(db, device_id)
            if device is None:
                return None
            device_ports = ports.get_ports_for_device(db, device_id)
            return DeviceDetails(
                device=_device_response(device, len(device_ports)),
                ports=[PortResponse.model_validate(port) for port in device_ports],
            )

    def get_all_devices(self) -> list[DeviceResponse]:
        """Get all devices with port counts, most recently seen first."""
        with self.session_factory() as db:
            return [_device_response(d, count) for d, count in devices.get_all_devices(db)]

    def search_devices(self, query: str) -> list[DeviceResponse]:
        """Search devices by IP, hostname, OS fingerprint or MAC."""
        with self.session_factory() as db:
            return [_device_response(d, count) for d, count in devices.search_devices(db, query)]

    def get_changes(
        self,
        *,
        device_id: int | None = None,
        scan_id: int | None = None,
        change_type: ChangeType | None = None,
        limit: int = 100,
    ) -> list[ChangeResponse]:
        """Get change records, newest first."""
        with self.session_factory() as db:
            records = changes.get_changes(
                db, device_id=device_id, scan_id=scan_id, change_type=change_type, limit=limit
            )
            return [ChangeResponse.model_validate(change) for change in records]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def add_log_entry(self, level: str, message: str, component: str) -> None:
        """Persist a single log entry."""
        with self._transaction() as db:
            logs.add_log_entry(db, level, message, component)

    def add_log_entries(self, entries: Iterable[LogEntry]) -> int:
        """Persist buffered log entries in one transaction."""
        with self._transaction() as db:
            return logs.add_log_entries(db, entries)

    def get_log_entries(
        self,
        limit: int = 100,
        level: str | None = None,
        component: str | None = None,
    ) -> list[LogEntryResponse]:
        """Get persisted log entries, newest first."""
        with self.session_factory() as db:
            entries = logs.get_log_entries(db, limit, level, component)
            return [LogEntryResponse.model_validate(entry) for entry in entries]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clean_old_data(self, retention_days: int) -> int:
        """Delete data older than ``retention_days`` and return the rows removed."""
        with self._transaction() as db:
            result = maintenance.clean_old_data(db, retention_days)
        return result.total

    def backup_database(self) -> Path:
        """Write a timestamped backup under ``backups/`` and return its path."""
        with self._write_lock:
            return maintenance.backup_database(self.engine, self.db_path)

    def optimize_database(self) -> None:
        """Run VACUUM, REINDEX and ANALYZE."""
        with self._write_lock:
            maintenance.optimize_database(self.engine)

    def get_database_stats(self) -> DatabaseStats:
        """Collect inventory statistics."""
        with self.session_factory() as db:
            return maintenance.get_database_stats(db, self.db_path)
