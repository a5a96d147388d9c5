"""Service for scan records."""

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from panopticon.models.scan import Scan, ScanStatus
from panopticon.utils import utcnow


def create_scan(db: Session, template: str, *, timestamp: datetime | None = None) -> Scan:
    """Create a scan record in the running state."""
    scan = Scan(
        timestamp=timestamp or utcnow(),
        template=template,
        status=ScanStatus.RUNNING,
        duration=0,
        devices_found=0,
        ports_found=0,
    )
    db.add(scan)
    db.flush()
    return scan


def get_scan(db: Session, scan_id: int) -> Scan | None:
    """Get a scan by its ID."""
    result = db.execute(select(Scan).where(Scan.id == scan_id))
    return result.scalar_one_or_none()


def update_scan(
    db: Session,
    scan_id: int,
    status: ScanStatus | str,
    devices_found: int,
    ports_found: int,
    duration: timedelta | float,
    error_message: str | None = None,
) -> Scan | None:
    """
    Record the outcome of a scan.

    Duration is stored in whole seconds.

    Returns None if the scan does not exist.

    Raises:
        ValueError: If status is empty or not a known scan status
    """
    if not status:
        raise ValueError("status cannot be empty")

    scan_status = ScanStatus(status)

    scan = get_scan(db, scan_id)
    if scan is None:
        return None

    if isinstance(duration, timedelta):
        duration = duration.total_seconds()

    scan.status = scan_status
    scan.devices_found = devices_found
    scan.ports_found = ports_found
    scan.duration = int(duration)
    scan.error_message = error_message or None
    db.flush()
    return scan


def get_recent_scans(db: Session, limit: int = 10) -> list[Scan]:
    """Get the most recent scans, newest first."""
    result = db.execute(select(Scan).order_by(Scan.timestamp.desc(), Scan.id.desc()).limit(limit))
    return list(result.scalars().all())
