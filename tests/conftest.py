"""Pytest configuration and fixtures for panopticon tests."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from threading import Event

import pytest
from sqlalchemy.orm import Session, sessionmaker

from panopticon.core.config import DatabaseSettings, ScannerSettings, Settings
from panopticon.models.device import Device
from panopticon.models.scan import Scan, ScanStatus
from panopticon.scanner.orchestrator import ScanOrchestrator
from panopticon.services.store import ReconciliationStore
from panopticon.utils import utcnow

SAMPLE_NMAP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE nmaprun>
<nmaprun scanner="nmap" args="nmap -oX - 192.168.1.0/24">
  <host>
    <status state="up" />
    <address addr="192.168.1.1" addrtype="ipv4" />
    <address addr="00:11:22:33:44:55" addrtype="mac" vendor="Acme" />
    <hostnames>
      <hostname name="router.local" type="PTR" />
    </hostnames>
    <ports>
      <extraports state="closed" count="997" />
      <port protocol="tcp" portid="80">
        <state state="open" />
        <service name="http" product="nginx" version="1.18.0" />
      </port>
      <port protocol="tcp" portid="443">
        <state state="open" />
        <service name="https" product="nginx" version="1.18.0" />
      </port>
      <port protocol="tcp" portid="22">
        <state state="open" />
        <service name="ssh" product="OpenSSH" version="8.2p1" />
      </port>
      <port protocol="tcp" portid="23">
        <state state="closed" />
        <service name="telnet" />
      </port>
    </ports>
    <os>
      <osmatch name="Linux 5.4" accuracy="95">
        <osclass type="general purpose" vendor="Linux" osfamily="Linux" accuracy="95" />
      </osmatch>
      <osmatch name="Linux 4.15" accuracy="90" />
    </os>
  </host>
  <host>
    <status state="up" />
    <address addr="192.168.1.2" addrtype="ipv4" />
    <address addr="AA:BB:CC:DD:EE:FF" addrtype="mac" />
    <hostnames>
      <hostname name="desktop.local" />
    </hostnames>
    <ports>
      <port protocol="tcp" portid="445">
        <state state="open" />
        <service name="microsoft-ds" product="Windows Share" />
      </port>
      <port protocol="tcp" portid="3389">
        <state state="open" />
        <service name="ms-wbt-server" product="Microsoft Terminal Services" />
      </port>
    </ports>
    <os>
      <osmatch name="Windows 10" accuracy="94" />
    </os>
  </host>
  <host>
    <status state="down" />
    <address addr="192.168.1.3" addrtype="ipv4" />
  </host>
  <host>
    <status state="up" />
    <address addr="fe80::1" addrtype="ipv6" />
  </host>
  <runstats>
    <finished time="1700000000" elapsed="12.5" />
    <hosts up="3" down="1" total="4" />
  </runstats>
</nmaprun>
"""

SAMPLE_DEVICE_COUNT = 2
SAMPLE_PORT_COUNT = 5


class FakeRunner:
    """Stands in for NmapRunner: writes canned XML to the ``-oX`` path."""

    def __init__(self, xml: str = SAMPLE_NMAP_XML, error: Exception | None = None) -> None:
        self.xml = xml
        self.error = error
        self.commands: list[list[str]] = []
        self.started = Event()
        self.release: Event | None = None

    def block(self) -> Event:
        """Make the next run wait until the returned event is set."""
        self.release = Event()
        return self.release

    def run(self, command: list[str]) -> None:
        self.commands.append(command)
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=10)
        if self.error is not None:
            raise self.error
        output_path = Path(command[command.index("-oX") + 1])
        output_path.write_text(self.xml, encoding="utf-8")


class DeviceFactory:
    """Inserts device rows directly, bypassing reconciliation."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create(
        self,
        ip_address: str = "10.0.0.1",
        mac_address: str | None = None,
        hostname: str | None = None,
        os_fingerprint: str | None = None,
        last_seen: datetime | None = None,
    ) -> int:
        seen = last_seen or utcnow()
        with self.session_factory.begin() as db:
            device = Device(
                ip_address=ip_address,
                mac_address=mac_address,
                hostname=hostname,
                os_fingerprint=os_fingerprint,
                first_seen=seen,
                last_seen=seen,
            )
            db.add(device)
            db.flush()
            return device.id


class ScanFactory:
    """Inserts scan rows directly."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create(
        self,
        timestamp: datetime | None = None,
        template: str = "default",
        status: ScanStatus = ScanStatus.COMPLETED,
    ) -> int:
        with self.session_factory.begin() as db:
            scan = Scan(
                timestamp=timestamp or utcnow(),
                template=template,
                duration=0,
                devices_found=0,
                ports_found=0,
                status=status,
            )
            db.add(scan)
            db.flush()
            return scan.id


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(
        _env_file=None,
        scanner=ScannerSettings(
            target_network="192.168.1.0/24",
            output_dir=tmp_path / "scans",
            compress_output=False,
            mock_mode=False,
        ),
        database=DatabaseSettings(path=tmp_path / "panopticon.db"),
    )


@pytest.fixture
def store(settings: Settings) -> Iterator[ReconciliationStore]:
    """A store backed by a fresh SQLite file."""
    store = ReconciliationStore(settings)
    yield store
    store.close()


@pytest.fixture
def session_factory(store: ReconciliationStore) -> sessionmaker[Session]:
    return store.session_factory


@pytest.fixture
def device_factory(session_factory: sessionmaker[Session]) -> DeviceFactory:
    return DeviceFactory(session_factory)


@pytest.fixture
def scan_factory(session_factory: sessionmaker[Session]) -> ScanFactory:
    return ScanFactory(session_factory)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def orchestrator(
    settings: Settings, store: ReconciliationStore, fake_runner: FakeRunner
) -> ScanOrchestrator:
    """An orchestrator wired to the fake runner."""
    orchestrator = ScanOrchestrator(settings, store, runner=fake_runner)
    orchestrator.start()
    return orchestrator
