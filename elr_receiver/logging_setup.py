"""Logging configuration for the receiver process."""

import copy
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from pythonjsonlogger import jsonlogger

LOGGER_NAME = "elr-receiver"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def format(self, record):
        # The record is shared with the file handlers; color a copy.
        record = copy.copy(record)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.getMessage()}{self.RESET}"
        record.args = None
        return super().format(record)


def setup_logging(
    log_file: Optional[str] = "elr_receiver.log",
    level: str = "INFO",
    error_log_file: Optional[str] = "elr_receiver.error.log",
) -> logging.Logger:
    """
    Configure the ``elr-receiver`` logger.

    Console output is colored and filtered at ``level``. When ``log_file`` is
    set, a daily-rotating JSON log keeps full DEBUG detail for 7 days, and
    errors also go to a plain-text error log.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    ))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=7, encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(jsonlogger.JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s %(lineno)d %(funcName)s',
            rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
        ))
        logger.addHandler(file_handler)

    if log_file and error_log_file:
        error_handler = logging.FileHandler(error_log_file, mode='a', encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | [%(name)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(error_handler)

    return logger
