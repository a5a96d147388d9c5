"""SQLAlchemy models for Panopticon."""

from panopticon.models.base import Base
from panopticon.models.change import Change, ChangeType
from panopticon.models.device import Device
from panopticon.models.log_entry import LogEntry, LogLevel
from panopticon.models.port import Port
from panopticon.models.scan import Scan, ScanStatus

__all__ = [
    "Base",
    "Device",
    "Port",
    "Scan",
    "ScanStatus",
    "Change",
    "ChangeType",
    "LogEntry",
    "LogLevel",
]
