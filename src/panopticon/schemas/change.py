"""Schemas for change audit records and persisted logs."""

from datetime import datetime

from pydantic import BaseModel

from panopticon.models.change import ChangeType
from panopticon.models.log_entry import LogLevel


class ChangeResponse(BaseModel):
    """Change audit record response."""

    id: int
    scan_id: int | None
    device_id: int
    change_type: ChangeType
    details: str
    timestamp: datetime

    model_config = {"from_attributes": True}


class LogEntryResponse(BaseModel):
    """Persisted application log entry."""

    id: int
    level: LogLevel
    message: str
    component: str
    timestamp: datetime

    model_config = {"from_attributes": True}
