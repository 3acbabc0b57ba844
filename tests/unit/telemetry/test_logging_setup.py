"""
Tests for structured logging setup.
"""

from __future__ import annotations

import logging

import structlog

from replguard.config import LoggingConfig
from replguard.telemetry.logging import setup_logging


class TestSetupLogging:
    def test_single_stderr_handler(self):
        setup_logging(LoggingConfig(level="debug", format="json"))
        setup_logging(LoggingConfig(level="warning"))

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_run_id_bound_to_context(self):
        setup_logging(LoggingConfig(), run_id="01JRUN")
        try:
            assert structlog.contextvars.get_contextvars()["run_id"] == "01JRUN"
        finally:
            structlog.contextvars.clear_contextvars()
