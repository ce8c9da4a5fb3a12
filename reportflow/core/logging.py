"""
Reportflow Engine - Structured Logging

One logging setup for the API, the CLI and the pool module:

- JSON lines (production) or a compact colored console format (development)
- INFO and below on stdout, WARNING and above on stderr
- Ingestion context (file_name, report_type, chunk_index, request_id) carried
  in a context variable and merged into every record
- loguru output (the pool module) forwarded into the same handlers
- Secrets in context or extras are replaced by "[REDACTED]"

Usage:
    from reportflow.core.logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(file_name="labor_0115.xlsx", report_type="labor"):
        logger.info("[ingest] chunk accepted", extra={"rows": 500})
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable

from loguru import logger as loguru_logger

_log_context: ContextVar[Dict[str, Any]] = ContextVar("reportflow_log_context", default={})


def get_current_context() -> Dict[str, Any]:
    """Copy of the fields attached to every record in this context."""
    return dict(_log_context.get())


def set_context(**fields: Any) -> None:
    """Attach fields to every later record of the current task."""
    _log_context.set({**_log_context.get(), **fields})


def clear_context() -> None:
    _log_context.set({})


@contextmanager
def LogContext(**fields: Any) -> Generator[None, None, None]:
    """
    Attach fields for the duration of a block, then restore the previous set.

    Usage:
        with LogContext(file_name="horizon.xlsx", chunk_index=3):
            logger.info("[ingest] chunk buffered")
    """
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Redaction
# =============================================================================

SENSITIVE_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "credential",
    "dsn",
    "database_url",
)
REDACTED = "[REDACTED]"


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Replace values under sensitive keys, descending into dicts and lists."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive(key) else redact_sensitive(value, max_depth - 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]
    return data


# =============================================================================
# Formatters
# =============================================================================

# Attributes every LogRecord has; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed to the logging call via ``extra=``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
    }


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per line.

        {"timestamp": "...", "level": "INFO", "logger": "reportflow.ingest.upsert",
         "message": "[upsert] daily_reports: committed 1800 rows in 2 batches (412ms)",
         "service": "reportflow", "file_name": "labor.xlsx", "rows": 1800}
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_traceback: bool = True,
        redact_sensitive_data: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_traceback = include_traceback
        self.redact_sensitive_data = redact_sensitive_data

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {}
        if self.include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        payload.update(
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        payload.update(get_current_context())
        payload.update(record_extras(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exception"] = {"type": exc_type.__name__, "message": str(exc_value)}
            if self.include_traceback:
                payload["exception"]["traceback"] = traceback.format_exception(
                    exc_type, exc_value, exc_tb
                )

        if self.redact_sensitive_data:
            payload = redact_sensitive(payload)
        return json.dumps(payload, default=str, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """
    Development output:

        10:30:00.123 INFO     reportflow.ingest.upsert [labor labor.xlsx #2/4] [upsert] ...
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        tag = self._context_tag(get_current_context())

        line = f"{stamp} {color}{record.levelname:<8}{self.RESET} {record.name}{tag} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _context_tag(context: Dict[str, Any]) -> str:
        parts = [str(context[key]) for key in ("request_id", "report_type", "file_name") if key in context]
        if "chunk_index" in context:
            chunk = f"#{int(context['chunk_index']) + 1}"
            if "total_chunks" in context:
                chunk += f"/{context['total_chunks']}"
            parts.append(chunk)
        return f" [{' '.join(parts)}]" if parts else ""


# =============================================================================
# Handlers
# =============================================================================


class _LevelRangeFilter(logging.Filter):
    """Pass records whose level lies in [low, high]."""

    def __init__(self, low: int, high: int):
        super().__init__()
        self.low = low
        self.high = high

    def filter(self, record: logging.LogRecord) -> bool:
        return self.low <= record.levelno <= self.high


def _stream_handlers(formatter: logging.Formatter) -> Iterable[logging.Handler]:
    routes = (
        (sys.stdout, logging.NOTSET, logging.INFO),
        (sys.stderr, logging.WARNING, logging.CRITICAL),
    )
    for stream, low, high in routes:
        handler = logging.StreamHandler(stream)
        handler.addFilter(_LevelRangeFilter(low, high))
        handler.setFormatter(formatter)
        yield handler


def _forward_loguru(message: Any) -> None:
    """loguru sink that re-emits the record through stdlib logging."""
    record = message.record
    logging.getLogger(record["name"] or "reportflow").log(
        record["level"].no,
        record["message"],
        extra={key: value for key, value in record["extra"].items() if key not in _RECORD_ATTRS},
    )


# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("psycopg.pool", "uvicorn.access", "httpx")


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "reportflow",
) -> None:
    """
    Install the reportflow handlers on the root logger.

    Replaces any handlers already installed, so calling it again (tests, CLI
    after app import) switches format cleanly.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines when True, colored console otherwise
        service_name: Value of the ``service`` field on every record
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter: logging.Formatter = (
        StructuredJsonFormatter() if json_output else ColoredConsoleFormatter()
    )
    for handler in _stream_handlers(formatter):
        root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    loguru_logger.remove()
    loguru_logger.add(_forward_loguru, level=numeric_level, format="{message}")

    set_context(service=service_name)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """
    Wall-clock timer for a block.

    Usage:
        with Timer() as timer:
            await unit.execute(statement)
        logger.info("[upsert] batch done", extra={"duration_ms": timer.elapsed_ms})
    """

    def __init__(self) -> None:
        self.started: float = 0.0
        self.stopped: float | None = None

    def __enter__(self) -> "Timer":
        self.started = time.perf_counter()
        self.stopped = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stopped = time.perf_counter()

    @property
    def elapsed_seconds(self) -> float:
        end = self.stopped if self.stopped is not None else time.perf_counter()
        return end - self.started

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000
