"""Subprocess execution of the nmap binary."""

from __future__ import annotations

import logging
import subprocess

from panopticon.scanner.threading_utils import StreamDrainer
from panopticon.utils import format_command

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class ScanExecutionError(RuntimeError):
    """Raised when the scan tool cannot be started or exits with an error."""


class NmapRunner:
    """Runs a scan command to completion, logging its output as it arrives."""

    def run(self, command: list[str]) -> None:
        """
        Execute the command and wait for it to exit.

        Raises:
            ScanExecutionError: If the binary is missing or exits non-zero
        """
        logger.info("Nmap command: %s", format_command(command))

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ScanExecutionError(f"nmap executable not found: {command[0]}") from exc
        except OSError as exc:
            raise ScanExecutionError(f"failed to start nmap: {exc}") from exc

        stdout_drainer = StreamDrainer(process.stdout, logger, "nmap")
        stderr_drainer = StreamDrainer(
            process.stderr, logger, "nmap stderr", logging.WARNING, keep_lines=STDERR_TAIL_LINES
        )
        stdout_drainer.start()
        stderr_drainer.start()

        exit_code = process.wait()
        stdout_drainer.join()
        stderr_drainer.join()

        if exit_code != 0:
            stderr_tail = stderr_drainer.lines
            message = f"nmap scan failed with exit code {exit_code}"
            if stderr_tail:
                message = f"{message}: {' '.join(stderr_tail)}"
            raise ScanExecutionError(message)

        logger.info("Nmap completed successfully")
