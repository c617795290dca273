"""
Unit tests for logging configuration and setup.

Tests setup_logging function, file handlers, and edge cases.
"""

import logging
import os
import tempfile
from unittest.mock import patch

import pytest

from main import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Test setup_logging function."""

    def test_basic_logging_config(self):
        """Test basic logging configuration with defaults."""
        config = {
            "logging": {
                "level": "DEBUG",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        }

        setup_logging(config)

        assert logging.getLogger().level == logging.DEBUG
        stream_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)]
        assert len(stream_handlers) >= 1

    def test_file_logging_enabled(self):
        """Test file logging is enabled when a log file is specified."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "logs", "budget.log")
            setup_logging({"logging": {"level": "INFO", "file": log_file}})

            file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
            assert len(file_handlers) == 1
            assert os.path.exists(log_file)
            for handler in file_handlers:
                handler.close()

    def test_invalid_log_level_defaults_to_info(self):
        """Test that invalid log level defaults to INFO."""
        with patch('main.logger') as mock_logger:
            setup_logging({"logging": {"level": "INVALID_LEVEL"}})
            mock_logger.warning.assert_called()

        assert logging.getLogger().level == logging.INFO

    def test_unwritable_log_file_is_non_fatal(self, tmp_path):
        """A log file that cannot be opened falls back to console logging."""
        with patch('main.logger') as mock_logger:
            setup_logging({"logging": {"level": "INFO", "file": str(tmp_path)}})
            mock_logger.warning.assert_called()

        handlers = logging.getLogger().handlers
        assert not [h for h in handlers if isinstance(h, logging.FileHandler)]
        assert [h for h in handlers if isinstance(h, logging.StreamHandler)]

    def test_missing_logging_config_uses_defaults(self):
        """Test that missing logging config uses defaults."""
        setup_logging({})
        assert logging.getLogger().level == logging.INFO

    def test_repeated_setup_replaces_handlers(self):
        setup_logging({"logging": {"level": "INFO"}})
        setup_logging({"logging": {"level": "WARNING"}})

        assert logging.getLogger().level == logging.WARNING
        assert len(logging.getLogger().handlers) == 1
