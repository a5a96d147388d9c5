"""Schemas for device and port data."""

from datetime import datetime

from pydantic import BaseModel


class PortResponse(BaseModel):
    """Open port information for a device."""

    id: int
    device_id: int
    port_number: int
    protocol: str
    service_name: str | None
    service_version: str | None
    first_seen: datetime
    last_seen: datetime

    model_config = {"from_attributes": True}


class DeviceResponse(BaseModel):
    """Device information response."""

    id: int
    ip_address: str
    mac_address: str | None
    hostname: str | None
    os_fingerprint: str | None
    first_seen: datetime
    last_seen: datetime
    port_count: int | None = None

    model_config = {"from_attributes": True}


class DeviceDetails(BaseModel):
    """A device together with its open ports, ordered by port number."""

    device: DeviceResponse
    ports: list[PortResponse]
