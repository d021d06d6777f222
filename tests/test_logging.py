"""
Tests for structured logging setup.

Run with: pytest tests/test_logging.py -v
"""

import sys
from pathlib import Path

import pytest
import structlog

sys.path.insert(0, str(Path(__file__).parent.parent))

from iris_workflow.utils.logging import configure_logging, get_logger


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """Test logging configuration."""

    def test_creates_log_dir(self, tmp_path, restore_structlog):
        log_dir = tmp_path / "logs" / "nested"
        configure_logging(str(log_dir), level="DEBUG")
        assert log_dir.is_dir()
        assert structlog.is_configured()

    def test_logger_accepts_key_values(self, tmp_path, restore_structlog):
        configure_logging(str(tmp_path), level="WARNING")
        logger = get_logger("iris_workflow.test")
        logger.info("filtered_out", stage=1)
        logger.warning("kept", stage=2, channel="faq")

    def test_get_logger_before_configuration(self):
        logger = get_logger("iris_workflow.test")
        assert hasattr(logger, "info")
