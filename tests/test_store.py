"""Tests for the reconciliation store.

Tests cover:
- Device and port reconciliation with change detection
- Uniqueness and concurrent writers
- Scan records
- Retention, backup, optimization and statistics
- Lock-contention retries
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from panopticon.core.config import DatabaseSettings, Settings
from panopticon.models.change import ChangeType
from panopticon.models.log_entry import LogLevel
from panopticon.models.scan import ScanStatus
from panopticon.scanner.models import HostObservation, PortObservation
from panopticon.services import logs, maintenance
from panopticon.services.store import ReconciliationStore, execute_with_retry
from panopticon.utils import utcnow


def _host(**kwargs) -> HostObservation:
    values = {
        "ip_address": "192.168.1.10",
        "mac_address": "00:11:22:33:44:55",
        "hostname": "nas.local",
        "os_fingerprint": "Linux 5.4",
    }
    values.update(kwargs)
    return HostObservation(**values)


def _busy_error() -> OperationalError:
    return OperationalError("INSERT INTO devices", {}, Exception("database is locked"))


class TestUpsertDevice:
    """Tests for device reconciliation."""

    def test_new_device_is_recorded_with_change(self, store: ReconciliationStore) -> None:
        """Test a first observation creates a device and a new_device change."""
        scan_id = store.create_scan("default")

        device_id = store.upsert_device(HostObservation(ip_address="203.0.113.5"), scan_id=scan_id)

        assert device_id > 0
        device = store.get_device(device_id)
        assert device is not None
        assert device.ip_address == "203.0.113.5"
        assert device.mac_address is None

        changes = store.get_changes(device_id=device_id)
        assert len(changes) == 1
        assert changes[0].change_type == ChangeType.NEW_DEVICE
        assert changes[0].details == "New device discovered: 203.0.113.5"
        assert changes[0].scan_id == scan_id

    def test_timestamps_are_rounded_to_the_hour(self, store: ReconciliationStore) -> None:
        """Test first_seen and last_seen are truncated to the hour."""
        device = store.get_device(store.upsert_device(_host()))

        assert device is not None
        for value in (device.first_seen, device.last_seen):
            assert (value.minute, value.second, value.microsecond) == (0, 0, 0)

    def test_reobservation_is_idempotent(self, store: ReconciliationStore) -> None:
        """Test identical observations yield one device and one change."""
        first_id = store.upsert_device(_host())
        before = store.get_device(first_id)

        second_id = store.upsert_device(_host())
        after = store.get_device(second_id)

        assert second_id == first_id
        assert len(store.get_all_devices()) == 1
        assert after == before
        changes = store.get_changes(device_id=first_id)
        assert [change.change_type for change in changes] == [ChangeType.NEW_DEVICE]

    def test_hostname_change_is_recorded_alone(self, store: ReconciliationStore) -> None:
        """Test a hostname-only difference produces exactly one hostname fragment."""
        device_id = store.upsert_device(_host(hostname="old.local"))
        store.upsert_device(_host(hostname="new.local"))

        changes = store.get_changes(device_id=device_id, change_type=ChangeType.DEVICE_CHANGE)
        assert len(changes) == 1
        assert changes[0].details == "Hostname changed: old.local -> new.local"
        assert store.get_device(device_id).hostname == "new.local"

    def test_multiple_changes_are_joined(self, store: ReconciliationStore) -> None:
        """Test hostname and OS differences are reported in one change."""
        device_id = store.upsert_device(_host(hostname="a.local", os_fingerprint="Linux 5.4"))
        store.upsert_device(_host(hostname="b.local", os_fingerprint="Linux 6.1"))

        changes = store.get_changes(device_id=device_id, change_type=ChangeType.DEVICE_CHANGE)
        assert changes[0].details == (
            "Hostname changed: a.local -> b.local; OS changed: Linux 5.4 -> Linux 6.1"
        )

    def test_empty_values_keep_stored_values(self, store: ReconciliationStore) -> None:
        """Test empty observed values neither overwrite nor count as changes."""
        device_id = store.upsert_device(_host())
        store.upsert_device(_host(hostname="", os_fingerprint=""))

        device = store.get_device(device_id)
        assert device.hostname == "nas.local"
        assert device.os_fingerprint == "Linux 5.4"
        assert store.get_changes(device_id=device_id, change_type=ChangeType.DEVICE_CHANGE) == []

    def test_mac_is_adopted_by_device_seen_without_one(self, store: ReconciliationStore) -> None:
        """Test a MAC observed later attaches to the MAC-less device on that IP."""
        device_id = store.upsert_device(_host(mac_address=None))
        adopted_id = store.upsert_device(_host(mac_address="AA:BB:CC:DD:EE:FF"))

        assert adopted_id == device_id
        assert store.get_device(device_id).mac_address == "AA:BB:CC:DD:EE:FF"
        changes = store.get_changes(device_id=device_id, change_type=ChangeType.DEVICE_CHANGE)
        assert len(changes) == 1
        assert changes[0].details.startswith("MAC address changed:")
        assert changes[0].details.endswith("-> AA:BB:CC:DD:EE:FF")

    def test_different_mac_on_same_ip_is_a_new_device(self, store: ReconciliationStore) -> None:
        """Test the (ip, mac) pair is the device identity."""
        first_id = store.upsert_device(_host(mac_address="00:00:00:00:00:01"))
        second_id = store.upsert_device(_host(mac_address="00:00:00:00:00:02"))

        assert first_id != second_id
        assert len(store.get_all_devices()) == 2

    def test_change_without_scan_has_no_scan_id(self, store: ReconciliationStore) -> None:
        """Test changes recorded before any scan exists do not reference one."""
        device_id = store.upsert_device(_host())

        changes = store.get_changes(device_id=device_id)
        assert changes[0].scan_id is None

    def test_change_defaults_to_latest_scan(self, store: ReconciliationStore) -> None:
        """Test changes without an explicit scan reference the most recent scan."""
        store.create_scan("quick")
        latest_id = store.create_scan("default")

        device_id = store.upsert_device(_host())

        assert store.get_changes(device_id=device_id)[0].scan_id == latest_id


class TestUpsertPort:
    """Tests for port reconciliation."""

    def test_new_port_records_change(self, store: ReconciliationStore) -> None:
        """Test a first port observation records a new_port change."""
        device_id = store.upsert_device(_host())
        store.upsert_port(device_id, PortObservation(22, "tcp", "ssh", "OpenSSH 8.2p1"))

        changes = store.get_changes(device_id=device_id, change_type=ChangeType.NEW_PORT)
        assert len(changes) == 1
        assert changes[0].details == "New port discovered: 22/tcp - ssh"

    def test_service_change_is_recorded(self, store: ReconciliationStore) -> None:
        """Test a different service version records a port_change."""
        device_id = store.upsert_device(_host())
        first_id = store.upsert_port(device_id, PortObservation(80, "tcp", "http", "nginx 1.18.0"))
        second_id = store.upsert_port(device_id, PortObservation(80, "tcp", "http", "nginx 1.20.0"))

        assert first_id == second_id
        changes = store.get_changes(device_id=device_id, change_type=ChangeType.PORT_CHANGE)
        assert len(changes) == 1
        assert changes[0].details == (
            "Service on port 80/tcp changed: http nginx 1.18.0 -> http nginx 1.20.0"
        )

    def test_reobserved_port_is_idempotent(self, store: ReconciliationStore) -> None:
        """Test the same port observed twice is stored once without a port_change."""
        device_id = store.upsert_device(_host())
        port = PortObservation(443, "tcp", "https", "nginx 1.18.0")
        store.upsert_port(device_id, port)
        store.upsert_port(device_id, port)

        details = store.get_device_details(device_id)
        assert len(details.ports) == 1
        assert store.get_changes(device_id=device_id, change_type=ChangeType.PORT_CHANGE) == []

    def test_same_number_different_protocol(self, store: ReconciliationStore) -> None:
        """Test ports are keyed on number and protocol together."""
        device_id = store.upsert_device(_host())
        store.upsert_port(device_id, PortObservation(53, "tcp", "domain"))
        store.upsert_port(device_id, PortObservation(53, "udp", "domain"))

        assert len(store.get_device_details(device_id).ports) == 2

    def test_device_details_orders_ports(self, store: ReconciliationStore) -> None:
        """Test device details compose the device and its ports by number."""
        device_id = store.upsert_device(_host())
        for number in (8080, 22, 443):
            store.upsert_port(device_id, PortObservation(number, "tcp"))

        details = store.get_device_details(device_id)

        assert details.device.id == device_id
        assert details.device.port_count == 3
        assert [port.port_number for port in details.ports] == [22, 443, 8080]

    def test_device_details_missing_device(self, store: ReconciliationStore) -> None:
        """Test details of an unknown device are None."""
        assert store.get_device_details(999) is None


class TestUniqueness:
    """Tests for the identity constraints."""

    def test_duplicate_ip_mac_is_rejected(self, device_factory) -> None:
        """Test the (ip, mac) pair is unique at the database level."""
        device_factory.create(ip_address="10.0.0.5", mac_address="00:11:22:33:44:55")

        with pytest.raises(IntegrityError):
            device_factory.create(ip_address="10.0.0.5", mac_address="00:11:22:33:44:55")

    def test_concurrent_writers_create_one_row(self, store: ReconciliationStore) -> None:
        """Test many threads merging the same host produce one device and one port."""
        host = _host(ip_address="10.1.1.1")
        port = PortObservation(22, "tcp", "ssh")

        def merge(_: int) -> int:
            device_id = store.upsert_device(host)
            store.upsert_port(device_id, port)
            return device_id

        with ThreadPoolExecutor(max_workers=8) as executor:
            device_ids = set(executor.map(merge, range(40)))

        assert len(device_ids) == 1
        devices = store.get_all_devices()
        assert len(devices) == 1
        assert devices[0].port_count == 1
        change_types = sorted(change.change_type.value for change in store.get_changes())
        assert change_types == ["new_device", "new_port"]

    def test_concurrent_writers_keep_every_host(self, store: ReconciliationStore) -> None:
        """Test threads merging distinct hosts lose no rows and duplicate none."""
        host_count = 32

        def merge(index: int) -> int:
            return store.upsert_device(
                _host(ip_address=f"10.2.0.{index + 1}", mac_address=None, hostname=None)
            )

        with ThreadPoolExecutor(max_workers=8) as executor:
            device_ids = list(executor.map(merge, range(host_count)))

        assert len(set(device_ids)) == host_count
        devices = store.get_all_devices()
        assert len(devices) == host_count
        assert {device.ip_address for device in devices} == {
            f"10.2.0.{index + 1}" for index in range(host_count)
        }
        new_devices = store.get_changes(change_type=ChangeType.NEW_DEVICE, limit=host_count * 2)
        assert len(new_devices) == host_count


class TestScans:
    """Tests for scan records."""

    def test_create_scan_is_running(self, store: ReconciliationStore) -> None:
        """Test a new scan starts in the running state with zero counts."""
        scan = store.get_scan(store.create_scan("quick"))

        assert scan.status == ScanStatus.RUNNING
        assert scan.template == "quick"
        assert (scan.devices_found, scan.ports_found) == (0, 0)

    def test_update_scan_stores_whole_seconds(self, store: ReconciliationStore) -> None:
        """Test the duration is stored in whole seconds."""
        scan_id = store.create_scan("default")

        store.update_scan(scan_id, ScanStatus.COMPLETED, 2, 5, timedelta(seconds=12.7))

        scan = store.get_scan(scan_id)
        assert scan.status == ScanStatus.COMPLETED
        assert scan.duration == 12
        assert (scan.devices_found, scan.ports_found) == (2, 5)
        assert scan.error_message is None

    def test_update_scan_rejects_empty_status(self, store: ReconciliationStore) -> None:
        """Test an empty status is rejected."""
        scan_id = store.create_scan("default")

        with pytest.raises(ValueError, match="status cannot be empty"):
            store.update_scan(scan_id, "", 0, 0, 0)

    def test_update_unknown_scan_is_ignored(self, store: ReconciliationStore) -> None:
        """Test updating a missing scan does not raise."""
        store.update_scan(12345, "error", 0, 0, 0, "boom")

        assert store.get_scan(12345) is None

    def test_recent_scans_newest_first(self, store: ReconciliationStore, scan_factory) -> None:
        """Test recent scans are ordered newest first and limited."""
        now = utcnow()
        old_id = scan_factory.create(timestamp=now - timedelta(days=2))
        new_id = scan_factory.create(timestamp=now)
        scan_factory.create(timestamp=now - timedelta(days=5))

        scans = store.get_recent_scans(limit=2)

        assert [scan.id for scan in scans] == [new_id, old_id]


class TestRetention:
    """Tests for age-based data retention."""

    def test_clean_old_data(
        self, store: ReconciliationStore, device_factory, scan_factory, session_factory
    ) -> None:
        """Test rows older than the retention window are removed."""
        now = utcnow()
        kept_id = device_factory.create(ip_address="10.0.0.10", last_seen=now - timedelta(days=10))
        stale_id = device_factory.create(ip_address="10.0.0.40", last_seen=now - timedelta(days=40))
        device_factory.create(ip_address="10.0.0.100", last_seen=now - timedelta(days=100))
        scan_factory.create(timestamp=now - timedelta(days=60))
        recent_scan_id = scan_factory.create(timestamp=now - timedelta(days=10))
        store.upsert_port(stale_id, PortObservation(22, "tcp", "ssh"))
        with session_factory.begin() as db:
            logs.add_log_entry(db, "info", "old", "test", timestamp=now - timedelta(days=45))
            logs.add_log_entry(db, "info", "new", "test", timestamp=now)

        removed = store.clean_old_data(30)

        # 2 devices + 1 scan + 1 log; ports and their changes cascade
        assert removed == 4
        assert [device.id for device in store.get_all_devices()] == [kept_id]
        assert [scan.id for scan in store.get_recent_scans()] == [recent_scan_id]
        assert [entry.message for entry in store.get_log_entries()] == ["new"]
        assert store.get_database_stats().port_count == 0

    def test_nothing_to_clean(self, store: ReconciliationStore) -> None:
        """Test fresh data survives retention."""
        store.upsert_device(_host())

        assert store.clean_old_data(30) == 0
        assert len(store.get_all_devices()) == 1


class TestBackupAndOptimize:
    """Tests for database backup and optimization."""

    def test_backup_contains_committed_data(self, store: ReconciliationStore) -> None:
        """Test a backup can be opened and holds the same devices."""
        device_id = store.upsert_device(_host())
        store.upsert_port(device_id, PortObservation(22, "tcp", "ssh"))
        store.upsert_device(_host(ip_address="192.168.1.11", mac_address=None))

        backup_path = store.backup_database()

        assert backup_path.exists()
        assert backup_path.parent.name == "backups"
        assert backup_path.name.startswith("panopticon_")
        assert backup_path.suffix == ".db"

        restored = ReconciliationStore(
            Settings(_env_file=None, database=DatabaseSettings(path=backup_path))
        )
        try:
            original = {(d.ip_address, d.port_count) for d in store.get_all_devices()}
            copied = {(d.ip_address, d.port_count) for d in restored.get_all_devices()}
            assert copied == original
        finally:
            restored.close()

    def test_optimize_keeps_data(self, store: ReconciliationStore) -> None:
        """Test optimization leaves the stored data intact."""
        store.upsert_device(_host())

        store.optimize_database()

        assert len(store.get_all_devices()) == 1
        store.upsert_device(_host(ip_address="192.168.1.12"))
        assert len(store.get_all_devices()) == 2

    def test_backups_in_same_second_are_kept_apart(self, store: ReconciliationStore) -> None:
        """Test a second backup with the same timestamp gets its own file."""
        taken_at = datetime(2026, 10, 17, 12, 0, 0)
        store.upsert_device(_host(ip_address="10.0.0.1", mac_address=None))
        first = maintenance.backup_database(store.engine, store.db_path, now=taken_at)
        store.upsert_device(_host(ip_address="10.0.0.2", mac_address=None))

        second = maintenance.backup_database(store.engine, store.db_path, now=taken_at)

        assert first.name == "panopticon_20261017_120000.db"
        assert second.name == "panopticon_20261017_120000_1.db"
        for path, expected in ((first, {"10.0.0.1"}), (second, {"10.0.0.1", "10.0.0.2"})):
            restored = ReconciliationStore(
                Settings(_env_file=None, database=DatabaseSettings(path=path))
            )
            try:
                assert {d.ip_address for d in restored.get_all_devices()} == expected
            finally:
                restored.close()

    def test_backup_does_not_overwrite_existing_file(
        self, store: ReconciliationStore, monkeypatch: pytest.MonkeyPatch, tmp_path
    ) -> None:
        """Test a failing VACUUM INTO raises instead of copying over the target."""
        existing = tmp_path / "existing.db"
        existing.write_bytes(b"earlier backup")
        monkeypatch.setattr(maintenance, "build_backup_path", lambda db_path, now=None: existing)
        store.upsert_device(_host())

        with pytest.raises(OperationalError, match="output file already exists"):
            store.backup_database()

        assert existing.read_bytes() == b"earlier backup"


class TestQueries:
    """Tests for read-side queries."""

    def test_get_device_by_ip_prefers_most_recent(self, store, device_factory) -> None:
        """Test an IP shared by several devices resolves to the last seen."""
        now = utcnow()
        device_factory.create(
            ip_address="10.0.0.7",
            mac_address="00:00:00:00:00:01",
            last_seen=now - timedelta(days=3),
        )
        recent_id = device_factory.create(
            ip_address="10.0.0.7", mac_address="00:00:00:00:00:02", last_seen=now
        )

        assert store.get_device_by_ip("10.0.0.7").id == recent_id
        assert store.get_device_by_ip("10.0.0.8") is None

    def test_search_devices(self, store: ReconciliationStore) -> None:
        """Test search matches IP, hostname, OS and MAC substrings."""
        store.upsert_device(
            _host(
                ip_address="10.0.0.1",
                hostname="router.local",
                mac_address="00:11:22:33:44:01",
                os_fingerprint="OpenWrt",
            )
        )
        store.upsert_device(
            _host(
                ip_address="10.0.0.2",
                hostname="desktop.local",
                mac_address="00:11:22:33:44:02",
                os_fingerprint="Windows 10",
            )
        )

        assert [d.ip_address for d in store.search_devices("router")] == ["10.0.0.1"]
        assert [d.ip_address for d in store.search_devices("Windows")] == ["10.0.0.2"]
        assert [d.ip_address for d in store.search_devices("44:02")] == ["10.0.0.2"]
        assert len(store.search_devices("10.0.0")) == 2
        assert store.search_devices("printer") == []

    def test_database_stats(self, store: ReconciliationStore) -> None:
        """Test statistics count rows and bucket missing values as Unknown."""
        store.create_scan("default")
        linux_id = store.upsert_device(_host(ip_address="10.0.0.1", os_fingerprint="Linux"))
        store.upsert_device(_host(ip_address="10.0.0.2", os_fingerprint="", mac_address=None))
        store.upsert_port(linux_id, PortObservation(22, "tcp", "ssh"))
        store.upsert_port(linux_id, PortObservation(9999, "tcp", ""))

        stats = store.get_database_stats()

        assert (stats.device_count, stats.port_count, stats.scan_count) == (2, 2, 1)
        assert stats.last_scan_time is not None
        assert stats.size_bytes > 0
        assert stats.os_distribution == {"Linux": 1, "Unknown": 1}
        assert stats.service_distribution == {"ssh": 1, "Unknown": 1}
        assert stats.change_type_distribution == {"new_device": 2, "new_port": 2}


class TestLogEntries:
    """Tests for persisted log entries."""

    def test_levels_are_normalized(self, store: ReconciliationStore) -> None:
        """Test level aliases are stored as canonical levels."""
        store.add_log_entry("WARN", "disk almost full", "maintenance")
        store.add_log_entry("critical", "database gone", "store")
        store.add_log_entry("info", "scan started", "orchestrator")

        warnings = store.get_log_entries(level="warning")
        assert [entry.message for entry in warnings] == ["disk almost full"]
        assert warnings[0].level == LogLevel.WARNING
        errors = store.get_log_entries(level="error")
        assert [entry.component for entry in errors] == ["store"]

    def test_filter_by_component(self, store: ReconciliationStore) -> None:
        """Test entries can be filtered by component."""
        store.add_log_entry("info", "a", "scheduler")
        store.add_log_entry("info", "b", "orchestrator")

        entries = store.get_log_entries(component="scheduler")

        assert [entry.message for entry in entries] == ["a"]


class TestExecuteWithRetry:
    """Tests for the lock-contention retry helper."""

    def test_retries_busy_errors(self) -> None:
        """Test locked errors are retried until the operation succeeds."""
        calls = []

        def operation() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise _busy_error()
            return "done"

        assert execute_with_retry(operation, max_retries=3, retry_delay=0) == "done"
        assert len(calls) == 3

    def test_reraises_after_last_attempt(self) -> None:
        """Test the last busy error propagates once retries are used up."""
        calls = []

        def operation() -> None:
            calls.append(1)
            raise _busy_error()

        with pytest.raises(OperationalError, match="database is locked"):
            execute_with_retry(operation, max_retries=2, retry_delay=0)
        assert len(calls) == 2

    def test_other_errors_propagate_immediately(self) -> None:
        """Test errors that are not lock contention are not retried."""
        calls = []

        def operation() -> None:
            calls.append(1)
            raise OperationalError("SELECT", {}, Exception("no such table: devices"))

        with pytest.raises(OperationalError, match="no such table"):
            execute_with_retry(operation, retry_delay=0)
        assert len(calls) == 1

    def test_store_method_delegates(self, store: ReconciliationStore) -> None:
        """Test the store exposes the retry helper."""
        assert store.execute_with_retry(lambda: store.upsert_device(_host())) > 0
