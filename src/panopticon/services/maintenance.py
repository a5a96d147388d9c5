"""Retention, backup, optimization and statistics for the SQLite store."""

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from panopticon.core.database import apply_pragmas
from panopticon.models.change import Change
from panopticon.models.device import Device
from panopticon.models.log_entry import LogEntry
from panopticon.models.port import Port
from panopticon.models.scan import Scan
from panopticon.schemas.stats import DatabaseStats
from panopticon.utils import utcnow

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = "backups"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
UNKNOWN_LABEL = "Unknown"


@dataclass(frozen=True)
class RetentionResult:
    """Rows removed by one retention sweep."""

    changes: int
    scans: int
    devices: int
    logs: int

    @property
    def total(self) -> int:
        return self.changes + self.scans + self.devices + self.logs


def clean_old_data(
    db: Session, retention_days: int, *, now: datetime | None = None
) -> RetentionResult:
    """
    Delete rows older than the retention window.

    Order matters for referential integrity: changes, then scans, then
    devices (ports cascade), then logs.
    """
    cutoff = (now or utcnow()) - timedelta(days=retention_days)

    def _delete(statement) -> int:
        result = db.execute(statement.execution_options(synchronize_session=False))
        return result.rowcount or 0

    retention = RetentionResult(
        changes=_delete(delete(Change).where(Change.timestamp < cutoff)),
        scans=_delete(delete(Scan).where(Scan.timestamp < cutoff)),
        devices=_delete(delete(Device).where(Device.last_seen < cutoff)),
        logs=_delete(delete(LogEntry).where(LogEntry.timestamp < cutoff)),
    )
    logger.info(
        "Cleaned old data before %s: %d changes, %d scans, %d devices, %d logs (%d total)",
        cutoff.isoformat(),
        retention.changes,
        retention.scans,
        retention.devices,
        retention.logs,
        retention.total,
    )
    return retention


def build_backup_path(db_path: Path, now: datetime | None = None) -> Path:
    """
    Return ``<db dir>/backups/<stem>_<YYYYmmdd_HHMMSS><suffix>``.

    A ``_<n>`` counter is appended when a backup with that name already exists.
    """
    timestamp = (now or datetime.now()).strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_dir = db_path.parent / BACKUP_DIR_NAME
    backup_path = backup_dir / f"{db_path.stem}_{timestamp}{db_path.suffix}"
    counter = 1
    while backup_path.exists():
        backup_path = backup_dir / f"{db_path.stem}_{timestamp}_{counter}{db_path.suffix}"
        counter += 1
    return backup_path


def _vacuum_into_unsupported(exc: OperationalError) -> bool:
    # SQLite before 3.27 does not know VACUUM INTO
    return "syntax error" in str(exc.orig).lower()


def backup_database(engine: Engine, db_path: Path, *, now: datetime | None = None) -> Path:
    """
    Write a consistent copy of the database next to it under ``backups/``.

    The WAL is checkpointed first. ``VACUUM INTO`` produces the snapshot. A
    plain file copy is used only when the SQLite library lacks ``VACUUM INTO``;
    any other failure is raised.

    Returns:
        Path of the backup file
    """
    backup_path = build_backup_path(db_path, now)
    backup_path.parent.mkdir(parents=True, exist_ok=True)

    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        try:
            conn.exec_driver_sql("PRAGMA wal_checkpoint(FULL)").close()
        except OperationalError as exc:
            logger.warning("WAL checkpoint before backup failed: %s", exc)

        try:
            conn.exec_driver_sql("VACUUM INTO ?", (str(backup_path),))
        except OperationalError as exc:
            if not _vacuum_into_unsupported(exc):
                raise
            logger.warning("VACUUM INTO unsupported (%s); falling back to file copy", exc)
            shutil.copyfile(db_path, backup_path)

    logger.info("Database backup written to %s", backup_path)
    return backup_path


def optimize_database(engine: Engine) -> None:
    """Reclaim free space, rebuild indexes and refresh planner statistics."""
    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        conn.exec_driver_sql("VACUUM")
        conn.exec_driver_sql("REINDEX")
        conn.exec_driver_sql("ANALYZE")
        # Pragmas may reset after VACUUM
        apply_pragmas(conn.connection.dbapi_connection)
    logger.info("Database optimization completed")


def _distribution(db: Session, column, label: str) -> dict[str, int]:
    key = func.coalesce(func.nullif(column, ""), UNKNOWN_LABEL).label(label)
    result = db.execute(select(key, func.count()).group_by(key))
    return {name: count for name, count in result.all()}


def get_database_stats(db: Session, db_path: Path) -> DatabaseStats:
    """Collect counts, distributions and file size of the store."""
    device_count = db.execute(select(func.count(Device.id))).scalar_one()
    port_count = db.execute(select(func.count(Port.id))).scalar_one()
    scan_count = db.execute(select(func.count(Scan.id))).scalar_one()
    last_scan_time = db.execute(select(func.max(Scan.timestamp))).scalar_one_or_none()

    try:
        size_bytes = os.path.getsize(db_path)
    except OSError:
        size_bytes = 0

    change_rows = db.execute(
        select(Change.change_type, func.count()).group_by(Change.change_type)
    ).all()

    return DatabaseStats(
        device_count=device_count,
        port_count=port_count,
        scan_count=scan_count,
        last_scan_time=last_scan_time,
        size_bytes=size_bytes,
        os_distribution=_distribution(db, Device.os_fingerprint, "os"),
        service_distribution=_distribution(db, Port.service_name, "service"),
        change_type_distribution={change_type.value: count for change_type, count in change_rows},
    )
