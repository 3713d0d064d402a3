import logging
import logging.handlers

import pytest

from dvbridge.lib.models.config import LoggingConfig
from dvbridge.lib.util.logging_config import setup_logging

TRAFFIC_LOGGER = "dvbridge.apps.serial_transport.serial_transport"


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger(TRAFFIC_LOGGER).setLevel(logging.NOTSET)


def test_traffic_logger_held_at_info():
    setup_logging(LoggingConfig(level="DEBUG"))
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger(TRAFFIC_LOGGER).level == logging.INFO


def test_traffic_logging_enabled():
    setup_logging(LoggingConfig(level="DEBUG", log_serial_traffic=True))
    assert logging.getLogger(TRAFFIC_LOGGER).getEffectiveLevel() == logging.DEBUG


def test_file_handler(tmp_path):
    setup_logging(LoggingConfig(log_dir=tmp_path / "logs", enable_console=False, enable_file=True))
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)
    assert (tmp_path / "logs").is_dir()
    handlers[0].close()
