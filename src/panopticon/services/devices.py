"""Service for reconciling observed hosts into device records."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from panopticon.models.change import ChangeType
from panopticon.models.device import Device
from panopticon.models.port import Port
from panopticon.scanner.models import HostObservation
from panopticon.services.changes import record_change
from panopticon.utils import round_to_hour, utcnow

logger = logging.getLogger(__name__)

# An observation younger than this refreshes last_seen even without changes
FRESH_OBSERVATION_WINDOW = timedelta(hours=1)


def get_device(db: Session, device_id: int) -> Device | None:
    """Get a device by its ID."""
    result = db.execute(select(Device).where(Device.id == device_id))
    return result.scalar_one_or_none()


def get_device_by_ip(db: Session, ip_address: str) -> Device | None:
    """Get the most recently seen device with the given IP address."""
    result = db.execute(
        select(Device)
        .where(Device.ip_address == ip_address)
        .order_by(Device.last_seen.desc(), Device.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def find_device(db: Session, ip_address: str, mac_address: str | None) -> Device | None:
    """Find the stored device an observation belongs to.

    Resolution order:
    1. exact (ip, mac) match, where a missing MAC matches a NULL MAC
    2. with a MAC: the record for this IP whose MAC was never observed
    3. without a MAC: the most recently seen record for this IP
    """
    if mac_address:
        result = db.execute(
            select(Device).where(
                Device.ip_address == ip_address,
                Device.mac_address == mac_address,
            )
        )
        exact = result.scalar_one_or_none()
        if exact is not None:
            return exact
        result = db.execute(
            select(Device)
            .where(Device.ip_address == ip_address, Device.mac_address.is_(None))
            .order_by(Device.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    result = db.execute(
        select(Device)
        .where(Device.ip_address == ip_address)
        .order_by(
            Device.mac_address.is_not(None),
            Device.last_seen.desc(),
            Device.id.desc(),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


def describe_device_changes(device: Device, observation: HostObservation) -> list[str]:
    """List the human-readable differences an observation would apply.

    Empty observed values never count as a change.
    """
    details: list[str] = []
    if observation.mac_address and observation.mac_address != (device.mac_address or ""):
        details.append(
            f"MAC address changed: {device.mac_address or ''} -> {observation.mac_address}"
        )
    if observation.hostname and observation.hostname != (device.hostname or ""):
        details.append(f"Hostname changed: {device.hostname or ''} -> {observation.hostname}")
    if observation.os_fingerprint and observation.os_fingerprint != (device.os_fingerprint or ""):
        details.append(
            f"OS changed: {device.os_fingerprint or ''} -> {observation.os_fingerprint}"
        )
    return details


def upsert_device(
    db: Session,
    observation: HostObservation,
    *,
    scan_id: int | None = None,
    now: datetime | None = None,
) -> tuple[Device, bool]:
    """
    Create or update the device for an observed host.

    Timestamps are rounded down to the hour so that repeated scans within
    one hour do not churn first_seen/last_seen.

    Returns:
        Tuple of (Device, is_new) where is_new is True if this was a new entry.
    """
    now = now or utcnow()
    rounded = round_to_hour(now)
    mac_address = observation.mac_address or None

    existing = find_device(db, observation.ip_address, mac_address)

    if existing is None:
        device = Device(
            ip_address=observation.ip_address,
            mac_address=mac_address,
            hostname=observation.hostname or None,
            os_fingerprint=observation.os_fingerprint or None,
            first_seen=rounded,
            last_seen=rounded,
        )
        db.add(device)
        db.flush()

        logger.info(
            "New device discovered: %s (hostname=%s, id=%s)",
            observation.ip_address,
            observation.hostname or "-",
            device.id,
        )
        record_change(
            db,
            device_id=device.id,
            change_type=ChangeType.NEW_DEVICE,
            details=f"New device discovered: {observation.ip_address}",
            scan_id=scan_id,
            timestamp=now,
        )
        db.flush()
        return device, True

    details = describe_device_changes(existing, observation)
    is_fresh = observation.observed_at > now - FRESH_OBSERVATION_WINDOW

    if details or is_fresh:
        # Only overwrite with non-empty values
        if mac_address:
            existing.mac_address = mac_address
        if observation.hostname:
            existing.hostname = observation.hostname
        if observation.os_fingerprint:
            existing.os_fingerprint = observation.os_fingerprint
        existing.last_seen = max(existing.last_seen, rounded)

        if details:
            record_change(
                db,
                device_id=existing.id,
                change_type=ChangeType.DEVICE_CHANGE,
                details="; ".join(details),
                scan_id=scan_id,
                timestamp=now,
            )

        db.flush()
        logger.debug(
            "Updated existing device %s (id=%s, changed=%s)",
            observation.ip_address,
            existing.id,
            bool(details),
        )

    return existing, False


def _port_count_column():
    return (
        select(func.count(Port.id))
        .where(Port.device_id == Device.id)
        .correlate(Device)
        .scalar_subquery()
        .label("port_count")
    )


def _devices_with_port_counts() -> Select:
    return select(Device, _port_count_column()).order_by(Device.last_seen.desc(), Device.id)


def get_all_devices(db: Session) -> list[tuple[Device, int]]:
    """Get all devices with their port counts, most recently seen first."""
    result = db.execute(_devices_with_port_counts())
    return [(device, port_count) for device, port_count in result.all()]


def search_devices(db: Session, query: str) -> list[tuple[Device, int]]:
    """Search devices by IP, hostname, OS fingerprint or MAC address."""
    pattern = f"%{query}%"
    statement = _devices_with_port_counts().where(
        or_(
            Device.ip_address.like(pattern),
            Device.hostname.like(pattern),
            Device.os_fingerprint.like(pattern),
            Device.mac_address.like(pattern),
        )
    )
    result = db.execute(statement)
    return [(device, port_count) for device, port_count in result.all()]


def count_ports(db: Session, device_id: int) -> int:
    """Count the open ports stored for a device."""
    result = db.execute(select(func.count(Port.id)).where(Port.device_id == device_id))
    return result.scalar_one()
