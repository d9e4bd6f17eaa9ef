"""
Structured logging for bisync

Every module logs through a child of the "bisync" logger. The root bisync
logger owns the only handler, so one setup_logger() call at engine start
switches the whole package between JSON lines and plain text.

Sync context (table, direction, mode, rows) travels in ``extra`` and becomes
top-level keys of each JSON line.
"""
import logging
import sys
import time
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

ROOT_LOGGER = "bisync"

JSON_FIELDS = "%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


class SyncJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter stamping each line with UTC time and its call site

    Adds: timestamp, level, logger, module, function, line
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = log_record.get("timestamp") or datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record.update(
            logger=record.name,
            module=record.module,
            function=record.funcName,
            line=record.lineno,
        )


def _formatter(format_type: str) -> logging.Formatter:
    if format_type == "text":
        return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    return SyncJsonFormatter(JSON_FIELDS)


def setup_logger(name: str = ROOT_LOGGER, level: str = "INFO", format_type: str = "json") -> logging.Logger:
    """
    Attach a single stdout handler to a logger

    Calling it again replaces the handler, so settings can be re-applied when
    the engine initializes.

    Args:
        name: Logger name
        level: Level name, e.g. "DEBUG"
        format_type: "json" or "text"

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    numeric_level = logging.getLevelName(level.upper())
    logger.setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter(format_type))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Logger for a bisync module, usually get_logger(__name__)

    The root bisync handler is created with defaults on first use; names
    outside the namespace are nested under it.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        setup_logger(ROOT_LOGGER)

    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


class log_operation:
    """
    Log the start, end and duration of one unit of sync work

    Failures are logged at ERROR with the traceback and re-raised.

    Usage:
        with log_operation("forward sync jobshead", logger=logger, table="jobshead"):
            ...
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **context):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.context = context
        self.duration = 0.0
        self._started = 0.0

    def _extra(self, **fields) -> dict:
        return {"operation": self.operation_name, **self.context, **fields}

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.info(f"{self.operation_name} started", extra=self._extra())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._started
        elapsed = round(self.duration, 3)

        if exc_type is None:
            self.logger.info(
                f"{self.operation_name} finished in {elapsed}s",
                extra=self._extra(duration_seconds=elapsed, status="success"),
            )
        else:
            self.logger.error(
                f"{self.operation_name} failed after {elapsed}s: {exc_val}",
                extra=self._extra(duration_seconds=elapsed, status="error", error_type=exc_type.__name__),
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False
