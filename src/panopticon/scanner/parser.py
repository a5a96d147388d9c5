"""Nmap XML snapshot parsing and ingestion into the store."""

from __future__ import annotations

import io
import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from pathlib import Path
from typing import IO, TYPE_CHECKING

from panopticon.scanner.models import HostObservation, PortObservation
from panopticon.utils import parse_int

if TYPE_CHECKING:
    from panopticon.services.store import ReconciliationStore

logger = logging.getLogger(__name__)


class SnapshotParseError(RuntimeError):
    """Raised when a scan output document cannot be read or parsed."""


def _parse_port_element(port_elem: ET.Element) -> PortObservation | None:
    state_elem = port_elem.find("state")
    if state_elem is None or state_elem.get("state") != "open":
        return None

    port_id = port_elem.get("portid", "")
    port_number = parse_int(port_id)
    if port_number is None:
        logger.warning("Invalid port number %r, skipping", port_id)
        return None

    service_name = ""
    service_version = ""
    service_elem = port_elem.find("service")
    if service_elem is not None:
        service_name = service_elem.get("name", "")
        product = service_elem.get("product", "")
        if product:
            service_version = product
            version = service_elem.get("version", "")
            if version:
                service_version = f"{product} {version}"

    return PortObservation(
        port_number=port_number,
        protocol=port_elem.get("protocol", "tcp"),
        service_name=service_name,
        service_version=service_version,
    )


def parse_host_element(host: ET.Element) -> HostObservation | None:
    """
    Convert one ``<host>`` element into a HostObservation.

    Returns None for hosts that are not up or carry no IPv4 address.
    """
    status_elem = host.find("status")
    if status_elem is None or status_elem.get("state") != "up":
        return None

    ip_address = ""
    mac_address: str | None = None
    for addr_elem in host.findall("address"):
        addr_type = addr_elem.get("addrtype", "")
        if addr_type == "ipv4":
            ip_address = addr_elem.get("addr", "")
        elif addr_type == "mac":
            mac_address = addr_elem.get("addr") or None

    if not ip_address:
        logger.debug("Skipping host with no IPv4 address")
        return None

    hostname_elem = host.find("hostnames/hostname")
    hostname = hostname_elem.get("name", "") if hostname_elem is not None else ""

    osmatch_elem = host.find("os/osmatch")
    os_fingerprint = osmatch_elem.get("name", "") if osmatch_elem is not None else ""

    ports: list[PortObservation] = []
    for port_elem in host.findall("ports/port"):
        port = _parse_port_element(port_elem)
        if port is not None:
            ports.append(port)

    logger.debug(
        "Found device %s (hostname=%r, os=%r, ports=%d)",
        ip_address,
        hostname,
        os_fingerprint,
        len(ports),
    )
    return HostObservation(
        ip_address=ip_address,
        mac_address=mac_address,
        hostname=hostname,
        os_fingerprint=os_fingerprint,
        ports=tuple(ports),
    )


def iter_host_observations(source: str | Path | IO[bytes]) -> Iterator[HostObservation]:
    """
    Stream hosts out of an nmap XML document.

    Each ``<host>`` element is cleared once converted, so memory use does not
    grow with the size of the document.

    Raises:
        SnapshotParseError: If the document is malformed or unreadable
    """
    try:
        for _, elem in ET.iterparse(source, events=("end",)):
            if elem.tag != "host":
                continue
            observation = parse_host_element(elem)
            elem.clear()
            if observation is not None:
                yield observation
    except ET.ParseError as exc:
        raise SnapshotParseError(f"failed to parse nmap XML output: {exc}") from exc
    except OSError as exc:
        raise SnapshotParseError(f"failed to read nmap XML output: {exc}") from exc


def parse_nmap_xml(content: str | bytes) -> list[HostObservation]:
    """Parse an in-memory nmap XML document."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return list(iter_host_observations(io.BytesIO(content)))


def ingest_snapshot(
    path: str | Path,
    store: ReconciliationStore,
    *,
    scan_id: int | None = None,
) -> tuple[int, int]:
    """
    Merge every host and open port of an nmap XML file into the store.

    A failing upsert is logged and skipped; the rest of the document is
    still ingested.

    Returns:
        Tuple of (devices_found, ports_found)

    Raises:
        SnapshotParseError: If the document is malformed or unreadable
    """
    device_count = 0
    port_count = 0

    for host in iter_host_observations(Path(path)):
        try:
            device_id = store.execute_with_retry(
                lambda: store.upsert_device(host, scan_id=scan_id)
            )
        except Exception:
            logger.exception("Failed to save device %s", host.ip_address)
            continue
        device_count += 1

        for port in host.ports:
            try:
                store.execute_with_retry(
                    lambda: store.upsert_port(
                        device_id, port, scan_id=scan_id, observed_at=host.observed_at
                    )
                )
            except Exception:
                logger.exception(
                    "Failed to save port %s/%s on device %s",
                    port.port_number,
                    port.protocol,
                    device_id,
                )
                continue
            port_count += 1

    logger.info("Ingested %d devices and %d ports from %s", device_count, port_count, path)
    return device_count, port_count
