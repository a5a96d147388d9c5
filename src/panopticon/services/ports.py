"""Service for reconciling observed ports into port records."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from panopticon.models.change import ChangeType
from panopticon.models.port import Port
from panopticon.scanner.models import PortObservation
from panopticon.services.changes import record_change
from panopticon.services.devices import FRESH_OBSERVATION_WINDOW
from panopticon.utils import round_to_hour, utcnow

logger = logging.getLogger(__name__)


def get_port(db: Session, device_id: int, port_number: int, protocol: str) -> Port | None:
    """Get a port by its (device, number, protocol) key."""
    result = db.execute(
        select(Port).where(
            Port.device_id == device_id,
            Port.port_number == port_number,
            Port.protocol == protocol,
        )
    )
    return result.scalar_one_or_none()


def get_ports_for_device(db: Session, device_id: int) -> list[Port]:
    """Get all ports of a device ordered by port number."""
    result = db.execute(
        select(Port)
        .where(Port.device_id == device_id)
        .order_by(Port.port_number, Port.protocol)
    )
    return list(result.scalars().all())


def upsert_port(
    db: Session,
    device_id: int,
    observation: PortObservation,
    *,
    scan_id: int | None = None,
    observed_at: datetime | None = None,
    now: datetime | None = None,
) -> tuple[Port, bool]:
    """
    Create or update an open port of a device.

    Returns:
        Tuple of (Port, is_new) where is_new is True if this was a new entry.
    """
    now = now or utcnow()
    observed_at = observed_at or now
    rounded = round_to_hour(now)

    existing = get_port(db, device_id, observation.port_number, observation.protocol)

    if existing is None:
        port = Port(
            device_id=device_id,
            port_number=observation.port_number,
            protocol=observation.protocol,
            service_name=observation.service_name or None,
            service_version=observation.service_version or None,
            first_seen=rounded,
            last_seen=rounded,
        )
        db.add(port)
        db.flush()

        logger.debug(
            "New port discovered on device %s: %s/%s",
            device_id,
            observation.port_number,
            observation.protocol,
        )
        record_change(
            db,
            device_id=device_id,
            change_type=ChangeType.NEW_PORT,
            details=(
                f"New port discovered: {observation.port_number}/{observation.protocol}"
                f" - {observation.service_name}"
            ),
            scan_id=scan_id,
            timestamp=now,
        )
        db.flush()
        return port, True

    old_name = existing.service_name or ""
    old_version = existing.service_version or ""
    service_changed = (observation.service_name != "" and observation.service_name != old_name) or (
        observation.service_version != "" and observation.service_version != old_version
    )

    if service_changed or observed_at > now - FRESH_OBSERVATION_WINDOW:
        new_name = observation.service_name or old_name
        new_version = observation.service_version or old_version
        existing.service_name = new_name or None
        existing.service_version = new_version or None
        existing.last_seen = max(existing.last_seen, rounded)

        if service_changed:
            record_change(
                db,
                device_id=device_id,
                change_type=ChangeType.PORT_CHANGE,
                details=(
                    f"Service on port {observation.port_number}/{observation.protocol} changed: "
                    f"{old_name} {old_version} -> {new_name} {new_version}"
                ),
                scan_id=scan_id,
                timestamp=now,
            )

        db.flush()
        logger.debug(
            "Updated port %s/%s on device %s (service_changed=%s)",
            observation.port_number,
            observation.protocol,
            device_id,
            service_changed,
        )

    return existing, False
