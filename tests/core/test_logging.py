"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging

import structlog

from isobatch.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


class TestContext:
    def test_log_context_binds_and_unbinds(self):
        with LogContext(batch_id="b1"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "b1"
        assert "batch_id" not in structlog.contextvars.get_contextvars()

    def test_bind_unbind_clear(self):
        bind_context(batch_id="b1", drain="foreground")
        unbind_context("drain")
        assert structlog.contextvars.get_contextvars() == {"batch_id": "b1"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestConfigureLogging:
    def test_json_output_on_stderr(self, capsys):
        configure_logging(level="INFO", json_format=True, service="isobatch-test")

        with LogContext(batch_id="b1"):
            get_logger(__name__).info("task.forked", label="get_pid", pid=4242)

        captured = capsys.readouterr()
        assert captured.out == ""
        record = json.loads(captured.err.strip().splitlines()[-1])
        assert record["event"] == "task.forked"
        assert record["label"] == "get_pid"
        assert record["batch_id"] == "b1"
        assert record["service"] == "isobatch-test"
        assert record["level"] == "info"
        assert "timestamp" in record

    def test_level_filters(self, capsys):
        configure_logging(level="WARNING", json_format=True)

        logger = get_logger(__name__)
        logger.info("batch.waiting")
        logger.warning("batch.kill", reason="timeout")

        err = capsys.readouterr().err
        assert "batch.waiting" not in err
        assert "batch.kill" in err

    def test_leaves_stdlib_root_logger_alone(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level

        configure_logging(level="DEBUG", json_format=True)

        assert root.handlers == handlers
        assert root.level == level
