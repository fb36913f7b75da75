"""Tests for the central logging configuration."""

import json
import logging
import sys

import pytest

from relaygate.core import logging_config
from relaygate.core.logging_config import JsonFormatter, configure_logging


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch):
    """Leave the root logger as pytest configured it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    access_level = logging.getLogger("aiohttp.access").level
    for key in ("RELAYGATE_LOG_LEVEL", "RELAYGATE_LOG_FORMAT", "RELAYGATE_LOG_FILE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(logging_config, "_configured", False)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("aiohttp.access").setLevel(access_level)


class TestConfigureLogging:
    """configure_logging behavior."""

    def test_defaults(self):
        configure_logging()
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_second_call_ignored_without_force(self):
        configure_logging(level="INFO")
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.INFO

        configure_logging(level="DEBUG", force=True)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("aiohttp.access").level == logging.DEBUG

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("RELAYGATE_LOG_LEVEL", "warning")
        monkeypatch.setenv("RELAYGATE_LOG_FORMAT", "json")
        configure_logging()
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_argument_beats_environment(self, monkeypatch):
        monkeypatch.setenv("RELAYGATE_LOG_LEVEL", "ERROR")
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_file_output(self, tmp_path):
        log_file = tmp_path / "gateway.log"
        configure_logging(file_path=str(log_file))
        logging.getLogger("relaygate.test").info("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "written to file" in log_file.read_text()

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(level="LOUD")
        with pytest.raises(ValueError, match="Unknown log format"):
            configure_logging(format="xml")


class TestJsonFormatter:
    def test_fields_and_extra(self):
        record = logging.LogRecord(
            "relaygate.gateway.admission", logging.WARNING, __file__, 1, "blocked %s", ("x",), None
        )
        record.client = "198.51.100.7"

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "relaygate.gateway.admission"
        assert data["message"] == "blocked x"
        assert data["extra"] == {"client": "198.51.100.7"}
        assert "timestamp" in data

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), exc_info)

        data = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]
