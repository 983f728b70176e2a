"""
Logging for the Secure COD engine.

Everything logs under the ``secure_cod`` logger. Payment code logs through
an order-scoped adapter so each line carries the business order code it
concerns.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "secure_cod"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(order)s] %(message)s"
NO_ORDER = "-"


class OrderField(logging.Filter):
    """Gives records logged outside an order scope an ``order`` of ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "order"):
            record.order = NO_ORDER
        return True


class OrderLogger(logging.LoggerAdapter):
    """Tags every record with one business order code."""

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", {})["order"] = self.extra["order"]
        return msg, kwargs


def for_order(logger: logging.Logger, business_order_code: str) -> OrderLogger:
    return OrderLogger(logger, {"order": business_order_code})


def _attach(logger: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(OrderField())
    logger.addHandler(handler)


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Route the package logger to stdout, and to ``log_file`` when given.

    Calling it again replaces the handlers from the previous call. Unknown
    level names fall back to INFO.
    """
    level_num = logging.getLevelName((level or "INFO").upper())
    if not isinstance(level_num, int):
        level_num = logging.INFO
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level_num)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    _attach(logger, logging.StreamHandler(sys.stdout), level_num, formatter)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _attach(logger, logging.FileHandler(log_file), level_num, formatter)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the package logger; ``__name__`` of a package module passes through."""
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
