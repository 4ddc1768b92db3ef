"""Tests for structured logging configuration."""

import json
import logging

import structlog

from cli.logging_config import _redact_sensitive, setup_logging


class TestLoggingConfig:
    """Test structlog setup modes."""

    def test_console_mode(self):
        """Console mode logs without error."""
        setup_logging(json_mode=False, level="DEBUG")
        structlog.get_logger().info("test message", key="value")

    def test_level_filtering(self):
        """Log level filters lower messages."""
        setup_logging(json_mode=False, level="WARNING")
        root = logging.getLogger()
        assert root.level == logging.WARNING

    def test_default_level_is_info(self):
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_processor_chain(self):
        setup_logging(json_mode=True, level="DEBUG")
        config = structlog.get_config()
        assert structlog.contextvars.merge_contextvars in config["processors"]
        assert _redact_sensitive in config["processors"]

    def test_file_handler_writes_json(self, tmp_path):
        log_file = tmp_path / "logs" / "curator.log"
        setup_logging(level="ERROR", log_file=log_file, file_level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

        structlog.stdlib.get_logger("curator.test").info("refinement.committed", owner_id="o1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        line = log_file.read_text().strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "refinement.committed"
        assert record["owner_id"] == "o1"


class TestRedaction:
    def test_api_key_redacted(self):
        event = {"event": "calling driver", "key": "sk-ant-REDACTED"}
        out = _redact_sensitive(None, None, event)
        assert "1234567890" not in out["key"]
        assert out["key"].startswith("sk-ant-abcdefghij")

    def test_email_redacted(self):
        out = _redact_sensitive(None, None, {"event": "owner is jane@example.com"})
        assert out["event"] == "owner is REDACTED@email"

    def test_non_strings_untouched(self):
        out = _redact_sensitive(None, None, {"event": "x", "count": 3})
        assert out["count"] == 3
