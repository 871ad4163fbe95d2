"""
startorigin.services.log_buffer — Recent Log Records for the Admin Panel
=========================================================================

A bounded, thread-safe buffer of recent log records plus the
``logging.Handler`` that fills it.  The API installs the handler at
startup; admins tail it via ``GET /api/admin/logs``.  Nothing is persisted.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    level: str
    logger: str
    message: str


class LogBuffer:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def tail(
        self, count: int = 200, *, level: str | None = None, prefix: str | None = None,
    ) -> list[dict[str, str]]:
        """Newest *count* entries at or above *level* from loggers under *prefix*."""
        floor = logging.getLevelName(level.upper()) if level else 0
        if not isinstance(floor, int):
            raise ValueError(f"Invalid level: {level}. Must be one of {VALID_LEVELS}")

        with self._lock:
            snapshot = list(self._entries)

        matched = [
            asdict(e) for e in snapshot
            if logging.getLevelName(e.level) >= floor
            and (not prefix or e.logger.startswith(prefix))
        ]
        return matched[-count:] if count else matched

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BufferHandler(logging.Handler):
    """Logging handler that appends records to a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


_buffer = LogBuffer()


def get_buffer() -> LogBuffer:
    return _buffer


def install_handler(level: int = logging.INFO) -> BufferHandler:
    """Attach a :class:`BufferHandler` to the root logger (once).

    Uvicorn's loggers are switched to propagate so their records reach it.
    """
    root = logging.getLogger()
    for h in root.handlers:
        if isinstance(h, BufferHandler):
            return h
    handler = BufferHandler(_buffer, level=level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).propagate = True
    return handler


def get_logs(
    tail: int = 200, level: str | None = None, logger_filter: str | None = None,
) -> list[dict[str, str]]:
    return _buffer.tail(tail, level=level, prefix=logger_filter)


def set_capture_level(level_name: str) -> str:
    """Change the minimum level captured into the buffer.  Returns it."""
    level_name = level_name.upper()
    if level_name not in VALID_LEVELS:
        raise ValueError(f"Invalid level: {level_name}. Must be one of {VALID_LEVELS}")
    install_handler().setLevel(getattr(logging, level_name))
    return level_name


def get_current_level() -> str:
    return logging.getLevelName(install_handler().level)
