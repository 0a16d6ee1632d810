"""
Structured Logging
==================

JSON log lines for the ops service.

Every record carries an ISO timestamp and the deployment environment.
It also carries the request correlation id when the caller passed one in
``extra``. Fields whose names look like credentials are masked before
the line is written.

Schema drift is reported through ``warn_once`` so a missing table shows
up once per process instead of once per inbox request.

    from src.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Inbox built", extra={"row_count": 12})
"""

import logging
import sys
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from pythonjsonlogger import jsonlogger

REDACTED = "***REDACTED***"
_SECRET_MARKERS = ("password", "token", "api_key", "database_url")

# Third-party loggers that drown the service's own lines
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.ERROR,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
}


def _is_secret(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, environment and correlation id."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()

        correlation_id = getattr(record, "correlation_id", None) or message_dict.get("correlation_id")
        if correlation_id:
            log_record["correlation_id"] = correlation_id

        log_record["environment"] = getattr(record, "environment", "unknown")

        for name, value in list(log_record.items()):
            if isinstance(value, str) and _is_secret(name):
                log_record[name] = REDACTED


class _EnvironmentFilter(logging.Filter):
    """Stamps records with the environment unless the caller set one."""

    def __init__(self, environment: str):
        super().__init__()
        self._environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "environment"):
            record.environment = self._environment
        return True


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Route all logging through one stdout handler emitting JSON.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
        environment: Value stamped on every record
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(CustomJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))
    handler.addFilter(_EnvironmentFilter(environment))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass ``__name__``."""
    return logging.getLogger(name)


_WARN_ONCE_MAX_KEYS = 4096
_warn_once_keys: "OrderedDict[str, None]" = OrderedDict()
_warn_once_lock = threading.Lock()


def warn_once(logger: logging.Logger, key: str, message: str, **context: Any) -> bool:
    """
    Log a warning at most once per process for a stable key.

    The key set is bounded. The oldest keys are forgotten first, which at
    worst repeats a warning.

    Returns:
        True if the warning was emitted, False if it was suppressed
    """
    with _warn_once_lock:
        if key in _warn_once_keys:
            return False
        _warn_once_keys[key] = None
        if len(_warn_once_keys) > _WARN_ONCE_MAX_KEYS:
            _warn_once_keys.popitem(last=False)

    extra = {name: value for name, value in context.items() if value is not None}
    extra["warn_key"] = key
    logger.warning(message, extra=extra)
    return True


def reset_warn_once() -> None:
    """Forget all warn-once keys (tests only)."""
    with _warn_once_lock:
        _warn_once_keys.clear()


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **context: Any) -> Iterator[None]:
    """
    Log ``operation`` with its wall time in milliseconds when the block exits.

        with log_latency(logger, "ops_inbox_build", limit=50):
            rows = await service.build()
    """
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            f"{operation} completed",
            extra={"operation": operation, "latency_ms": elapsed_ms, **context},
        )
