"""Scan orchestration: single-flight execution of nmap scans.

A scan moves through ``idle -> running -> completed | error``. Only one scan
runs at a time; a second request while one is running is rejected before
any scan record is written.
"""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from pathlib import Path
from threading import Lock

from panopticon.core.config import Settings
from panopticon.models.scan import ScanStatus
from panopticon.scanner.models import ScanState, ScanStats
from panopticon.scanner.output import clean_output_files, compress_output_file
from panopticon.scanner.parser import ingest_snapshot
from panopticon.scanner.runner import NmapRunner
from panopticon.scanner.templates import BUILTIN_TEMPLATES, build_scan_command, resolve_template
from panopticon.schemas.scan import ScanParameters, ScanResponse, ScanTemplateResponse
from panopticon.services.store import ReconciliationStore
from panopticon.utils import utcnow

logger = logging.getLogger(__name__)

PostCommitHook = Callable[[Path], object]

MOCK_SCAN_DELAY_SECONDS = 0.1
MOCK_SCHEDULED_RESULT = (5, 15)
MOCK_MANUAL_RESULT = (3, 10)


class ScanAlreadyRunningError(RuntimeError):
    """Raised when a scan is requested while another one is running."""

    def __init__(self) -> None:
        super().__init__("scan already in progress")


class ScanFailedError(RuntimeError):
    """Raised when a scan ends in the error state."""

    def __init__(self, scan_id: int | None, message: str) -> None:
        super().__init__(message)
        self.scan_id = scan_id


class ScanStatusTracker:
    """Holds the status of the current or last scan behind a single lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._stats = ScanStats()

    def try_begin(self) -> bool:
        """Enter the running state, or return False if a scan is already running."""
        with self._lock:
            if self._stats.state == ScanState.RUNNING:
                return False
            self._stats = ScanStats(state=ScanState.RUNNING, start_time=utcnow())
            return True

    def update(self, **changes) -> None:
        with self._lock:
            self._stats = dataclasses.replace(self._stats, **changes)

    def complete(self, devices_found: int, ports_found: int) -> None:
        self.update(state=ScanState.COMPLETED, devices_found=devices_found, ports_found=ports_found)

    def fail(self, error: str) -> None:
        self.update(state=ScanState.ERROR, devices_found=0, ports_found=0, error=error)

    def finish(self) -> None:
        """Stamp the end time and make sure the running state is left."""
        with self._lock:
            state = self._stats.state
            if state == ScanState.RUNNING:
                state = ScanState.ERROR
            self._stats = dataclasses.replace(self._stats, state=state, end_time=utcnow())

    def snapshot(self) -> ScanStats:
        with self._lock:
            return self._stats


class ScanOrchestrator:
    """Runs nmap scans and merges their results into the store."""

    def __init__(
        self,
        settings: Settings,
        store: ReconciliationStore,
        runner: NmapRunner | None = None,
        mock_mode: bool | None = None,
        post_commit_hooks: Sequence[PostCommitHook] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.runner = runner or NmapRunner()
        self.mock_mode = settings.scanner.mock_mode if mock_mode is None else mock_mode
        self.output_dir = Path(settings.scanner.output_dir)
        self.tracker = ScanStatusTracker()
        if post_commit_hooks is None:
            post_commit_hooks = [compress_output_file] if settings.scanner.compress_output else []
        self.post_commit_hooks = list(post_commit_hooks)

    def start(self) -> None:
        """Prepare the output directory."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        if self.mock_mode:
            logger.warning("Scanner running in mock mode; nmap will not be executed")
        logger.info("Scanner ready, output directory %s", self.output_dir)

    def run_scan(self, template: str | None = None) -> int:
        """Run a scan with the given or configured default template."""
        return self.run(template or self.settings.scanner.default_template)

    def run_manual_scan(self, parameters: ScanParameters) -> int:
        """Run a scan with the template and overrides of a manual request."""
        return self.run(parameters.template or self.settings.scanner.default_template, parameters)

    def run(self, template: str | None, overrides: ScanParameters | None = None) -> int:
        """
        Run one scan to completion and return its scan id.

        Raises:
            ScanAlreadyRunningError: If another scan is running
            ScanFailedError: If the scan ended in the error state
        """
        if not self.tracker.try_begin():
            raise ScanAlreadyRunningError()

        started = time.monotonic()
        scan_id: int | None = None
        output_path: Path | None = None
        try:
            scan_template = resolve_template(template)
            scan_id = self.store.create_scan(scan_template.name)
            self.tracker.update(scan_id=scan_id)
            logger.info("Starting scan %s with template %s", scan_id, scan_template.name)

            if self.mock_mode:
                devices_found, ports_found = self._run_mock(overrides)
            else:
                output_path = self.output_dir / f"scan_{uuid.uuid4()}.xml"
                command = build_scan_command(
                    self.settings.scanner.nmap_path,
                    scan_template,
                    output_path,
                    self.settings.scanner.target_network,
                    self.settings.scanner.rate_limit,
                    overrides,
                )
                self.runner.run(command)
                devices_found, ports_found = ingest_snapshot(
                    output_path, self.store, scan_id=scan_id
                )

            self.store.update_scan(
                scan_id,
                ScanStatus.COMPLETED,
                devices_found,
                ports_found,
                time.monotonic() - started,
            )
            self.tracker.complete(devices_found, ports_found)
        except Exception as exc:
            logger.exception("Scan %s failed", scan_id)
            self.tracker.fail(str(exc))
            self._record_failure(scan_id, str(exc), time.monotonic() - started)
            raise ScanFailedError(scan_id, str(exc)) from exc
        finally:
            self.tracker.finish()

        logger.info(
            "Scan %s completed in %.1fs: %d devices, %d ports",
            scan_id,
            time.monotonic() - started,
            devices_found,
            ports_found,
        )
        if output_path is not None:
            self._run_post_commit_hooks(output_path)
        return scan_id

    def _run_mock(self, overrides: ScanParameters | None) -> tuple[int, int]:
        time.sleep(MOCK_SCAN_DELAY_SECONDS)
        return MOCK_SCHEDULED_RESULT if overrides is None else MOCK_MANUAL_RESULT

    def _record_failure(self, scan_id: int | None, message: str, duration: float) -> None:
        if scan_id is None:
            return
        try:
            self.store.update_scan(scan_id, ScanStatus.ERROR, 0, 0, duration, message)
        except Exception:
            logger.exception("Failed to record failure of scan %s", scan_id)

    def _run_post_commit_hooks(self, output_path: Path) -> None:
        for hook in self.post_commit_hooks:
            try:
                hook(output_path)
            except Exception:
                logger.exception("Post-scan hook %r failed for %s", hook, output_path)

    def get_status(self) -> ScanStats:
        """Return a snapshot of the current or last scan."""
        return self.tracker.snapshot()

    def get_scan(self, scan_id: int) -> ScanResponse | None:
        return self.store.get_scan(scan_id)

    def get_recent_scans(self, limit: int = 10) -> list[ScanResponse]:
        return self.store.get_recent_scans(limit)

    def get_scan_templates(self) -> list[ScanTemplateResponse]:
        """List the built-in scan templates."""
        return [
            ScanTemplateResponse(
                id=name,
                name=template.name,
                description=template.description,
                nmap_args=list(template.nmap_args),
                rate_limit=template.rate_limit,
            )
            for name, template in BUILTIN_TEMPLATES.items()
        ]

    def clean(self) -> int:
        """Remove raw scan output older than the configured retention."""
        return clean_output_files(self.output_dir, self.settings.scanner.output_retention_days)
