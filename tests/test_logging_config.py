"""Tests for logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest

from convotag import logging_config
from convotag.logging_config import JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def reset_logging(monkeypatch):
    """Give each test a clean convotag logger and configuration registry."""
    logger = logging.getLogger("convotag")
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    monkeypatch.setattr(logging_config, "_configured_contexts", set())
    yield
    for handler in list(logger.handlers):
        if handler not in saved_handlers:
            handler.close()
            logger.removeHandler(handler)
    logger.setLevel(saved_level)


class TestSetupLogging:
    def test_file_handler_per_context(self, monkeypatch, tmp_path: Path):
        """Test that a rotating log file named after the context is created."""
        monkeypatch.setattr(logging_config.settings, "log_dir", str(tmp_path))
        monkeypatch.setattr(logging_config.settings, "log_file_enabled", True)
        monkeypatch.setattr(logging_config.settings, "log_console_enabled", False)

        setup_logging("worker")
        logging.getLogger("convotag.test").warning("hello")
        for handler in logging.getLogger("convotag").handlers:
            handler.flush()

        log_file = tmp_path / "worker.log"
        assert log_file.exists()
        assert "hello" in log_file.read_text()

    def test_idempotent(self, monkeypatch):
        """Test that calling setup twice for a context adds no handlers."""
        monkeypatch.setattr(logging_config.settings, "log_file_enabled", False)
        monkeypatch.setattr(logging_config.settings, "log_console_enabled", True)

        setup_logging("engine")
        count = len(logging.getLogger("convotag").handlers)
        setup_logging("engine")

        assert len(logging.getLogger("convotag").handlers) == count

    def test_level_from_settings(self, monkeypatch):
        monkeypatch.setattr(logging_config.settings, "log_level", "debug")
        monkeypatch.setattr(logging_config.settings, "log_file_enabled", False)

        setup_logging("engine")

        assert logging.getLogger("convotag").level == logging.DEBUG


class TestJsonFormatter:
    def test_formats_single_line_json(self):
        record = logging.LogRecord(
            name="convotag.services",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Analysis failed for %s",
            args=("abc",),
            exc_info=None,
        )

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "convotag.services"
        assert data["message"] == "Analysis failed for abc"
        assert "timestamp" in data

    def test_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            name="convotag",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="failed",
            args=(),
            exc_info=exc_info,
        )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exc_info"]
