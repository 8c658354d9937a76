"""Tests for structured logging setup."""

from __future__ import annotations

import json
from decimal import Decimal

import structlog

from p2p_desk.logging import get_logger, setup_logging


class TestSetupLogging:
    def test_json_format(self, capsys):
        setup_logging(level="INFO", log_format="json")
        logger = get_logger("test_json")
        logger.info("test message", asset="USDT")

        captured = capsys.readouterr()
        line = json.loads(captured.err.strip())
        assert line["event"] == "test message"
        assert line["asset"] == "USDT"
        assert line["level"] == "info"
        assert "timestamp" in line

    def test_json_renders_decimals(self, capsys):
        setup_logging(level="INFO", log_format="json")
        logger = get_logger("test_decimal")
        logger.info("price_updated", new_price=Decimal("19.99"))

        captured = capsys.readouterr()
        line = json.loads(captured.err.strip())
        assert line["new_price"] == "19.99"

    def test_console_format(self, capsys):
        setup_logging(level="INFO", log_format="console")
        logger = get_logger("test_console")
        logger.info("hello console", direction="SELL")

        captured = capsys.readouterr()
        assert "hello console" in captured.err
        assert "SELL" in captured.err

    def test_log_level_filtering(self, capsys):
        setup_logging(level="WARNING", log_format="json")
        logger = get_logger("test_level")
        logger.info("should be hidden")
        logger.warning("should appear")

        captured = capsys.readouterr()
        assert "should be hidden" not in captured.err
        assert "should appear" in captured.err

    def test_get_logger_with_context(self, capsys):
        setup_logging(level="INFO", log_format="json")
        logger = get_logger("test_ctx", order_number="ORD1", account="default")
        logger.info("context test")

        captured = capsys.readouterr()
        line = json.loads(captured.err.strip())
        assert line["order_number"] == "ORD1"
        assert line["account"] == "default"

    def test_contextvars_binding(self, capsys):
        setup_logging(level="INFO", log_format="json")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(cycle_id="abc123")

        logger = get_logger("test_ctxvars")
        logger.info("with context var")

        captured = capsys.readouterr()
        line = json.loads(captured.err.strip())
        assert line["cycle_id"] == "abc123"

        structlog.contextvars.clear_contextvars()
