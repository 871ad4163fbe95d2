"""
tests/test_log_buffer.py — In-Memory Log Buffer
================================================
"""

from __future__ import annotations

import logging

import pytest

from startorigin.services import log_buffer
from startorigin.services.log_buffer import BufferHandler, LogBuffer, LogEntry


def _entry(level: str, name: str = "startorigin.x", message: str = "m") -> LogEntry:
    return LogEntry(timestamp="2026-01-01T00:00:00+00:00", level=level, logger=name, message=message)


class TestLogBuffer:
    def test_capacity_drops_oldest(self):
        buf = LogBuffer(capacity=3)
        for i in range(5):
            buf.append(_entry("INFO", message=str(i)))
        assert len(buf) == 3
        assert [e["message"] for e in buf.tail()] == ["2", "3", "4"]

    def test_tail_count(self):
        buf = LogBuffer()
        for i in range(5):
            buf.append(_entry("INFO", message=str(i)))
        assert [e["message"] for e in buf.tail(2)] == ["3", "4"]

    def test_level_floor(self):
        buf = LogBuffer()
        for level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            buf.append(_entry(level))
        assert [e["level"] for e in buf.tail(level="warning")] == ["WARNING", "ERROR"]

    def test_logger_prefix(self):
        buf = LogBuffer()
        buf.append(_entry("INFO", name="startorigin.services.feed_service"))
        buf.append(_entry("INFO", name="uvicorn.access"))
        assert [e["logger"] for e in buf.tail(prefix="uvicorn")] == ["uvicorn.access"]

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="Invalid level"):
            LogBuffer().tail(level="LOUD")

    def test_clear(self):
        buf = LogBuffer()
        buf.append(_entry("INFO"))
        buf.clear()
        assert len(buf) == 0


class TestBufferHandler:
    def test_handler_captures_records(self):
        buf = LogBuffer()
        handler = BufferHandler(buf, level=logging.INFO)
        logger = logging.getLogger("startorigin.test_log_buffer")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            logger.debug("ignored")
            logger.warning("disk at %d%%", 91)
        finally:
            logger.removeHandler(handler)

        [entry] = buf.tail()
        assert entry["level"] == "WARNING"
        assert entry["message"] == "disk at 91%"
        assert entry["logger"] == "startorigin.test_log_buffer"


class TestModuleHelpers:
    @pytest.fixture(autouse=True)
    def _restore(self):
        handler = log_buffer.install_handler()
        level = handler.level
        yield
        handler.setLevel(level)
        log_buffer.get_buffer().clear()

    def test_install_is_idempotent(self):
        assert log_buffer.install_handler() is log_buffer.install_handler()
        handlers = [h for h in logging.getLogger().handlers if isinstance(h, BufferHandler)]
        assert len(handlers) == 1

    def test_set_and_get_capture_level(self):
        assert log_buffer.set_capture_level("debug") == "DEBUG"
        assert log_buffer.get_current_level() == "DEBUG"

    def test_set_invalid_level(self):
        with pytest.raises(ValueError):
            log_buffer.set_capture_level("chatty")

    def test_get_logs_filters(self):
        log_buffer.get_buffer().clear()
        log_buffer.get_buffer().append(_entry("ERROR", name="startorigin.api"))
        log_buffer.get_buffer().append(_entry("INFO", name="uvicorn"))
        logs = log_buffer.get_logs(tail=10, level="ERROR", logger_filter="startorigin")
        assert [e["logger"] for e in logs] == ["startorigin.api"]
