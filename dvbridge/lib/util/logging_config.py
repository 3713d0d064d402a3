"""
Logging Configuration
Structured logging for the bridge services
"""

import logging
import logging.handlers
import sys

import structlog

from dvbridge.lib.models.config import LoggingConfig

# Per-frame traffic loggers; kept at INFO unless explicitly asked for
_TRAFFIC_LOGGERS = (
    "dvbridge.apps.serial_transport.serial_transport",
    "dvbridge.apps.tx_scheduler.tx_scheduler",
)


def setup_logging(config: LoggingConfig):
    """
    Setup structured logging for the bridge

    Args:
        config: logging section of bridge_config.yaml
    """
    log_level = getattr(logging, config.level.upper(), logging.INFO)
    max_bytes = config.max_log_size_mb * 1024 * 1024

    if config.enable_file:
        config.log_dir.mkdir(parents=True, exist_ok=True)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.format == 'json':
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if config.format == 'json':
        formatter = logging.Formatter('%(message)s')
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if config.enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if config.enable_file:
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_dir / 'dvbridge.log',
            maxBytes=max_bytes,
            backupCount=config.backup_count
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(file_handler)

    if not config.log_serial_traffic:
        for name in _TRAFFIC_LOGGERS:
            logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    logger = structlog.get_logger()
    logger.info("logging_initialized", level=log_level, format=config.format)
