"""
Structured logging for bracketguard.

structlog over stdlib logging: every module logs UPPER_SNAKE events with
keyword fields, rendered as JSON lines (prod) or console text (dev).
Reconciliation passes bind pass_id through structlog.contextvars.
"""
import structlog
import logging
import os
import sys
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

NOISY_LOGGERS = ("aiohttp.access", "uvicorn.access", "ccxt.base.exchange")

_FILE_HANDLER_NAME = "bracketguard-file"


def _plain_values(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Render Decimals as fixed-point strings and enums as their values."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = f"{value:f}"
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger. Safe to call twice.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: json or text
        log_file: Optional rotating log file (defaults to $BRACKETGUARD_LOG_FILE)
    """
    if log_file is None:
        log_file = os.getenv("BRACKETGUARD_LOG_FILE") or None
    level = getattr(logging, log_level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _plain_values,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for handler in list(logging.root.handlers):
        if handler.get_name() == _FILE_HANDLER_NAME:
            logging.root.removeHandler(handler)
            handler.close()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # 10MB x 5 backups
        file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.set_name(_FILE_HANDLER_NAME)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)

    get_logger(__name__).info("LOGGING_INITIALIZED", log_level=log_level, log_format=log_format, log_file=log_file)


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)
