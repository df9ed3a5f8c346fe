import logging
import os
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest
from rich.logging import RichHandler

from buildresolver import log_utils

pytestmark = [pytest.mark.unit, pytest.mark.infrastructure]


def _reset_logger():
    for handler in log_utils.logger.handlers[:]:
        log_utils.logger.removeHandler(handler)
        handler.close()
    log_utils._file_handler = None
    log_utils._initialize_logger()


class TestLogUtils:
    """Test suite for log_utils module."""

    def setup_method(self):
        """Reset logger state before each test."""
        _reset_logger()

    def teardown_method(self):
        _reset_logger()

    def test_logger_initialization(self):
        assert log_utils.logger.name == "buildresolver"
        assert not log_utils.logger.propagate
        assert len(log_utils.logger.handlers) == 1
        assert isinstance(log_utils.logger.handlers[0], RichHandler)

    def test_logger_initialization_with_env_var(self):
        with patch.dict(os.environ, {"BUILDRESOLVER_LOG_LEVEL": "DEBUG"}):
            log_utils._initialize_logger()
        assert log_utils.logger.level == logging.DEBUG
        assert log_utils.logger.handlers[0].level == logging.DEBUG

    def test_logger_initialization_with_invalid_env_var(self):
        with patch.dict(os.environ, {"BUILDRESOLVER_LOG_LEVEL": "LOUD"}):
            log_utils._initialize_logger()
        assert log_utils.logger.level == logging.INFO

    def test_set_log_level_valid(self):
        log_utils.set_log_level("debug")
        assert log_utils.logger.level == logging.DEBUG

        log_utils.set_log_level("WARNING")
        assert log_utils.logger.level == logging.WARNING
        assert log_utils.logger.handlers[0].level == logging.WARNING

    def test_set_log_level_invalid(self):
        original_level = log_utils.logger.level

        log_utils.set_log_level("NOT_A_LEVEL")

        assert log_utils.logger.level == original_level

    def test_rich_handler_keeps_message_only_format(self):
        log_utils.set_log_level("DEBUG")

        formatter = log_utils.logger.handlers[0].formatter
        assert formatter._fmt == "%(message)s"

    def test_add_file_logging(self, tmp_path):
        log_utils.add_file_logging(tmp_path / "logs", "DEBUG")

        file_handlers = [
            h for h in log_utils.logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.DEBUG
        assert file_handlers[0].formatter._fmt == log_utils.DEBUG_LOG_FORMAT
        assert (tmp_path / "logs" / "buildresolver.log").exists()

    def test_add_file_logging_replaces_existing(self, tmp_path):
        log_utils.add_file_logging(tmp_path / "first")
        log_utils.add_file_logging(tmp_path / "second")

        file_handlers = [
            h for h in log_utils.logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename.endswith(
            os.path.join("second", "buildresolver.log")
        )

    def test_add_file_logging_invalid_level(self, tmp_path):
        log_utils.add_file_logging(tmp_path, "CHATTY")

        assert log_utils._file_handler.level == logging.INFO
        assert log_utils._file_handler.formatter._fmt == log_utils.INFO_LOG_FORMAT

    def test_rotating_file_handler_configuration(self, tmp_path):
        log_utils.add_file_logging(tmp_path)

        assert log_utils._file_handler.maxBytes == 10 * 1024 * 1024
        assert log_utils._file_handler.backupCount == 5
