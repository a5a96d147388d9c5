"""Schemas for scans, templates and scan requests."""

from datetime import datetime

from pydantic import BaseModel, Field

from panopticon.models.scan import ScanStatus


class ScanResponse(BaseModel):
    """Scan record response."""

    id: int
    timestamp: datetime
    template: str
    duration: int
    devices_found: int
    ports_found: int
    status: ScanStatus
    error_message: str | None = None

    model_config = {"from_attributes": True}


class ScanTemplateResponse(BaseModel):
    """Built-in scan template description."""

    id: str
    name: str
    description: str
    nmap_args: list[str]
    rate_limit: int | None


class ScanParameters(BaseModel):
    """Overrides for a manually triggered scan."""

    template: str | None = None
    target_network: str | None = None
    rate_limit: int | None = Field(default=None, gt=0)
    scan_all_ports: bool = False
    disable_ping: bool = False
