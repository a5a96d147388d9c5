"""Service for the change audit trail."""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from panopticon.models.change import Change, ChangeType
from panopticon.models.scan import Scan
from panopticon.utils import utcnow

logger = logging.getLogger(__name__)


def resolve_change_scan_id(db: Session, scan_id: int | None) -> int | None:
    """Return the scan a new change belongs to.

    An explicit scan id wins. Otherwise the most recent scan is used, and
    None when no scan has been recorded yet.
    """
    if scan_id is not None:
        return scan_id
    result = db.execute(select(func.max(Scan.id)))
    latest = result.scalar_one_or_none()
    if latest is None:
        logger.debug("No scan recorded yet; change will not reference a scan")
    return latest


def record_change(
    db: Session,
    *,
    device_id: int,
    change_type: ChangeType,
    details: str,
    scan_id: int | None = None,
    timestamp: datetime | None = None,
) -> Change:
    """Append a change record inside the caller's transaction."""
    change = Change(
        scan_id=resolve_change_scan_id(db, scan_id),
        device_id=device_id,
        change_type=change_type,
        details=details,
        timestamp=timestamp or utcnow(),
    )
    db.add(change)
    return change


def get_changes(
    db: Session,
    *,
    device_id: int | None = None,
    scan_id: int | None = None,
    change_type: ChangeType | None = None,
    limit: int = 100,
) -> list[Change]:
    """Get change records, newest first, with optional filters."""
    query = select(Change)
    if device_id is not None:
        query = query.where(Change.device_id == device_id)
    if scan_id is not None:
        query = query.where(Change.scan_id == scan_id)
    if change_type is not None:
        query = query.where(Change.change_type == change_type)
    query = query.order_by(Change.timestamp.desc(), Change.id.desc()).limit(limit)
    result = db.execute(query)
    return list(result.scalars().all())
