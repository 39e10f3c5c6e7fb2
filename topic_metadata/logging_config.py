"""Logging for the topic metadata pipeline.

Every module logs under the ``topic_metadata`` namespace. The CLI calls
``setup_logging`` once; console output is colored on a terminal and the
optional log file rotates, in plain text or one JSON object per line.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER = 'topic_metadata'

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s:%(lineno)d | %(message)s"

# Record attributes copied into JSON lines when present
EXTRA_FIELDS = ('topic_id', 'window', 'details')


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying topic/window context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.lineno}",
        }
        entry.update({name: getattr(record, name) for name in EXTRA_FIELDS if hasattr(record, name)})
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colors the level name when writing to a terminal."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[41m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_color: bool = False):
        super().__init__(fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelname) if self.use_color else None
        if color:
            # Replace in the rendered line; the record is shared with other handlers
            message = message.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)
        return message


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt='%H:%M:%S', use_color=sys.stdout.isatty()))
    return handler


def _file_handler(log_file: str, json_format: bool, max_bytes: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
    console: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the package logger, replacing any handlers from a previous call.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Rotating log file; its directory is created if needed
        json_format: Write the log file as JSON lines
        console: Also log to stdout
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The ``topic_metadata`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if console:
        logger.addHandler(_console_handler())
    if log_file:
        logger.addHandler(_file_handler(log_file, json_format, max_bytes, backup_count))

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Module logger under the package namespace, e.g. ``get_logger('writer')``."""
    return logging.getLogger(f'{ROOT_LOGGER}.{name}')


def log_exception(logger: logging.Logger, exc: Exception,
                  message: str = "An error occurred",
                  level: int = logging.ERROR,
                  topic_id: Optional[str] = None) -> None:
    """Log ``exc`` with its ``details`` and the topic it belongs to.

    The traceback is only attached at ERROR and above.
    """
    extra = {}
    if topic_id is not None:
        extra['topic_id'] = topic_id
    if hasattr(exc, 'details'):
        extra['details'] = exc.details

    logger.log(level, f"{message}: {exc}", exc_info=level >= logging.ERROR, extra=extra)
