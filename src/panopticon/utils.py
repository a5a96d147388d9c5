"""Utility functions shared by the scanner and the store."""

from __future__ import annotations

import ipaddress
import logging
import re
import shlex
import sys
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from panopticon.scanner.threading_utils import LogBufferHandler

DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
QUIET_LOGGERS = ("apscheduler", "sqlalchemy.engine")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def round_to_hour(value: datetime) -> datetime:
    """Truncate a timestamp to the start of its hour."""
    return value.replace(minute=0, second=0, microsecond=0)


def format_command(command: list[str]) -> str:
    """Return a shell-safe representation of the command for logging."""
    return shlex.join(command)


def normalize_log_level(level_name: str) -> str:
    """Normalize log level names to standard values."""
    if level_name.lower() in {"warning", "warn"}:
        return "warning"
    if level_name.lower() in {"error", "critical"}:
        return "error"
    if level_name.lower() == "debug":
        return "debug"
    return "info"


def parse_int(value: Any) -> int | None:
    """Safely parse a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as ``1h``, ``90m`` or ``1h30m``.

    A bare number is read as seconds.

    Raises:
        ValueError: If the string is not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("Duration must be a non-empty string")

    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    total = timedelta()
    position = 0
    for match in DURATION_PATTERN.finditer(text):
        if match.start() != position:
            raise ValueError(f"Invalid duration: {value}")
        total += DURATION_UNITS[match.group(2)] * float(match.group(1))
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration: {value}")
    return total


def sanitize_cidr(cidr: str) -> str:
    """Validate and sanitize a scan target for safe use in subprocess commands.

    Accepts a single address or CIDR network, IPv4 or IPv6.

    Args:
        cidr: CIDR notation string (e.g., "192.168.1.0/24" or "2001:db8::/32")

    Returns:
        Validated CIDR string

    Raises:
        ValueError: If the target is empty, malformed or contains unsafe characters
    """
    if not cidr or not isinstance(cidr, str):
        raise ValueError("no target network specified")

    cidr = cidr.strip()
    if not cidr:
        raise ValueError("no target network specified")

    # Only characters that can appear in an address or prefix length
    if not re.match(r"^[a-fA-F0-9.:/]+$", cidr):
        raise ValueError(f"CIDR contains invalid characters: {cidr}")

    try:
        ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise ValueError(f"Invalid CIDR format: {e}") from e

    return cidr


def configure_logging(level: str, buffer_handler: LogBufferHandler | None = None) -> logging.Logger:
    """Configure logging with a stdout stream handler and an optional buffer handler.

    Args:
        level: Log level string
        buffer_handler: Buffer handler collecting records for the logs table

    Returns:
        Logger instance for the application
    """
    logger = logging.getLogger("panopticon")
    root = logging.getLogger()
    root.handlers.clear()
    if isinstance(level, str):
        normalized_level = getattr(logging, level.upper(), logging.INFO)
    else:
        normalized_level = logging.INFO
    root.setLevel(normalized_level)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if buffer_handler is not None:
        root.addHandler(buffer_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
