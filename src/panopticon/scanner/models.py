"""Data models for scan execution and snapshot parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from panopticon.utils import utcnow


class ScanState(str, Enum):
    """Orchestrator state values."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class PortObservation:
    """One open port as reported by a single scan."""

    port_number: int
    protocol: str
    service_name: str = ""
    service_version: str = ""


@dataclass(frozen=True)
class HostObservation:
    """One host's attributes and open ports as reported by a single scan."""

    ip_address: str
    mac_address: str | None = None
    hostname: str = ""
    os_fingerprint: str = ""
    ports: tuple[PortObservation, ...] = ()
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ScanTemplate:
    """A named bundle of nmap arguments and a default rate limit."""

    name: str
    description: str
    nmap_args: tuple[str, ...]
    rate_limit: int | None = None


@dataclass(frozen=True)
class ScanStats:
    """Snapshot of the current or last scan."""

    scan_id: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    state: ScanState = ScanState.IDLE
    devices_found: int = 0
    ports_found: int = 0
    error: str | None = None


@dataclass(frozen=True)
class LogEntry:
    """Application log entry waiting to be persisted."""

    timestamp: datetime
    level: str
    message: str
    component: str
