"""Threading utilities for scan execution and log collection."""

from __future__ import annotations

import logging
import traceback
from collections import deque
from threading import Lock, Thread
from typing import IO

from panopticon.scanner.models import LogEntry
from panopticon.utils import normalize_log_level, utcnow


class LogBufferHandler(logging.Handler):
    """Collects log entries for periodic persistence into the logs table."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._lock = Lock()
        self._entries: list[LogEntry] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            message = "<failed to format log message>"
        if record.exc_info:
            exception_text = "".join(traceback.format_exception(*record.exc_info)).strip()
            message = f"{message}\n{exception_text}"
        entry = LogEntry(
            timestamp=utcnow(),
            level=normalize_log_level(record.levelname),
            message=message,
            component=record.name.rsplit(".", 1)[-1],
        )
        with self._lock:
            self._entries.append(entry)

    def drain(self) -> list[LogEntry]:
        """Drain all buffered log entries."""
        with self._lock:
            entries = self._entries
            self._entries = []
        return entries

    def requeue(self, entries: list[LogEntry]) -> None:
        """Requeue entries that failed to persist."""
        if not entries:
            return
        with self._lock:
            self._entries = entries + self._entries


class StreamDrainer(Thread):
    """
    Reads a subprocess pipe to completion so the child never blocks on a full buffer.

    Every line is logged; only the last ``keep_lines`` are retained.
    """

    def __init__(
        self,
        stream: IO[str],
        logger: logging.Logger,
        label: str,
        level: int = logging.DEBUG,
        keep_lines: int = 0,
    ) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._logger = logger
        self._label = label
        self._level = level
        self._lock = Lock()
        self._lines: deque[str] = deque(maxlen=keep_lines)

    @property
    def lines(self) -> list[str]:
        """The most recent retained lines."""
        with self._lock:
            return list(self._lines)

    def run(self) -> None:
        try:
            for raw_line in self._stream:
                line = raw_line.rstrip()
                if not line:
                    continue
                with self._lock:
                    self._lines.append(line)
                self._logger.log(self._level, "%s: %s", self._label, line)
        finally:
            self._stream.close()
