"""
Unit tests for logging setup.
"""

import logging

import json_log_formatter
import pytest

from versiondb.config import ObservabilityConfig
from versiondb.logs import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put the root logger back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self):
        """JSON format installs the JSON formatter."""
        setup_logging(ObservabilityConfig(log_level="debug", log_format="json"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_format(self):
        """Text format uses a plain formatter."""
        setup_logging(ObservabilityConfig(log_level="WARNING", log_format="text"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_defaults_to_info(self):
        """An unknown level name falls back to INFO."""
        setup_logging(ObservabilityConfig(log_level="chatty", log_format="text"))

        assert logging.getLogger().level == logging.INFO
