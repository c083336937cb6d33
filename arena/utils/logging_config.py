"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from arena.core.config import logging_config

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset({"api_secret", "private_key", "agent_private_key", "signature"})


def redact_secrets(logger, method_name, event_dict):
    """Mask credential values passed as log context."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure structured JSON logging to stdout and the log file."""
    level_name = (level or logging_config.log_level).upper()
    log_level = getattr(logging, level_name)

    # Create logs directory
    log_path = Path(log_file or logging_config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Add file handler once, even if called again
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    target = str(log_path.resolve())
    for handler in root_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(log_level)
    root_logger.addHandler(file_handler)
