"""Service for persisted application logs."""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from panopticon.models.log_entry import LogEntry, LogLevel
from panopticon.scanner.models import LogEntry as BufferedLogEntry
from panopticon.utils import normalize_log_level, utcnow


def add_log_entry(
    db: Session,
    level: str,
    message: str,
    component: str,
    *,
    timestamp: datetime | None = None,
) -> LogEntry:
    """Store a single log entry."""
    entry = LogEntry(
        level=LogLevel(normalize_log_level(level)),
        message=message,
        component=component,
        timestamp=timestamp or utcnow(),
    )
    db.add(entry)
    return entry


def add_log_entries(db: Session, entries: Iterable[BufferedLogEntry]) -> int:
    """Store buffered log entries, returning how many were added."""
    added = 0
    for buffered in entries:
        add_log_entry(
            db,
            buffered.level,
            buffered.message,
            buffered.component,
            timestamp=buffered.timestamp,
        )
        added += 1
    return added


def get_log_entries(
    db: Session,
    limit: int = 100,
    level: str | None = None,
    component: str | None = None,
) -> list[LogEntry]:
    """Get log entries, newest first, optionally filtered by level and component."""
    query = select(LogEntry)
    if level:
        query = query.where(LogEntry.level == LogLevel(level.lower()))
    if component:
        query = query.where(LogEntry.component == component)
    query = query.order_by(LogEntry.timestamp.desc(), LogEntry.id.desc()).limit(limit)
    result = db.execute(query)
    return list(result.scalars().all())
