"""
Structured logging for the runner updater.

Stage transitions, drain polls and rollback steps are emitted as one JSON
object per line, so an update's diagnostic trail can be picked up by the
journal or a log shipper. Context travels in `extra=` and becomes top-level
keys of the object.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from runner_updater.config import LoggingConfig

ROOT_LOGGER_NAME = "runner_updater"

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else came from `extra=`
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """
    Render a record as a single-line JSON object.

    Keys: timestamp (UTC, ISO 8601, from the record's creation time), level,
    logger, message, exception when exc_info is set, plus every non-None
    extra field. Values JSON cannot encode are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and value is not None
        )
        return json.dumps(entry, default=str)


def _handlers(
    formatter: logging.Formatter,
    log_to_stdout: bool,
    log_file: str | None,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if log_to_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the runner_updater logger.

    Replaces any handlers installed by an earlier call and stops
    propagation to the root logger.

    Args:
        config: Logging section of AppConfig. When given, the keyword
            arguments are ignored.
        level: Level name used without a config.
        json_format: Emit JSON objects instead of plain text lines.
        log_to_stdout: Attach a stdout handler.

    Returns:
        The configured package logger.
    """
    log_file: str | None = None
    max_bytes = backup_count = 0
    if config is not None:
        level = "DEBUG" if config.debug_mode else config.level
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
        log_file = config.log_file
        max_bytes = config.max_bytes or 0
        backup_count = config.backup_count or 0

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    formatter = JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for old in logger.handlers:
        old.close()
    logger.handlers.clear()
    logger.setLevel(numeric_level)
    for handler in _handlers(formatter, log_to_stdout, log_file, max_bytes, backup_count):
        handler.setLevel(numeric_level)
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child of the runner_updater logger for a module name."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
