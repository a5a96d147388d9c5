"""Schemas for inventory statistics."""

from datetime import datetime

from pydantic import BaseModel


class DatabaseStats(BaseModel):
    """Counts and distributions over the stored inventory."""

    device_count: int
    port_count: int
    scan_count: int
    last_scan_time: datetime | None
    size_bytes: int
    os_distribution: dict[str, int]
    service_distribution: dict[str, int]
    change_type_distribution: dict[str, int]
