"""Logging setup for DavChat clients.

Modules log through ``logging.getLogger(__name__)``. This module only wires
handlers: a console handler for everything at the configured level and an
optional error log file that records the error kind of each failure.
"""

from __future__ import annotations

import logging

from davchat.core.settings import Settings

ERROR_LOG_FORMAT = "[%(asctime)s] [%(error_kind)s] [%(name)s] %(message)s"
CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_HANDLER_MARKER = "_davchat_handler"


class ErrorKindFilter(logging.Filter):
    """Give every record an ``error_kind`` attribute so the formatter never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "error_kind"):
            record.error_kind = "unknown"
        return True


def configure_logging(settings: Settings, logger_name: str = "davchat") -> logging.Logger:
    """Attach console and error-log handlers to the package logger.

    Calling this more than once replaces the handlers installed previously.

    Args:
        settings: Client settings providing ``log_level`` and ``error_log_path``
        logger_name: Logger to configure, defaults to the package logger

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    logger.setLevel(settings.log_level.upper())

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    setattr(console, _HANDLER_MARKER, True)
    logger.addHandler(console)

    if settings.error_log_path:
        error_file = logging.FileHandler(settings.error_log_path, encoding="utf-8")
        error_file.setLevel(logging.WARNING)
        error_file.addFilter(ErrorKindFilter())
        error_file.setFormatter(logging.Formatter(ERROR_LOG_FORMAT))
        setattr(error_file, _HANDLER_MARKER, True)
        logger.addHandler(error_file)

    return logger
