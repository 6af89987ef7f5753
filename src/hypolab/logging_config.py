"""Structured logging configuration for hypolab.

Supports both text and JSON output formats. JSON format is suitable for
log aggregation systems like Loki, ELK, or Datadog.

Usage:
    from hypolab.logging_config import setup_logging

    setup_logging(level="INFO", format="json")

Log format can be configured via:
    - Environment variable: HYPOLAB_LOG_FORMAT=json
    - Config file: [general] log_format = "json"
    - Function argument: setup_logging(format="json")
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from hypolab.config import get_config
from hypolab.paths import paths

LogFormat = Literal["text", "json"]

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Produces log entries like:
    {"timestamp": "2024-01-15T10:30:45.123Z", "level": "INFO", "logger": "hypolab.storage", "message": "..."}
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra_fields = {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_KEYS and not key.startswith("_")
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(
    level: str | None = None,
    format: LogFormat | None = None,
    log_file: Path | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> None:
    """Configure logging for hypolab.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to the config value.
        format: Output format ("text" or "json"). Defaults to the config value.
        log_file: Path to log file. Defaults to ~/.cache/hypolab/hypolab.log.
        max_bytes: Max size before rotation.
        backup_count: Number of backup files.
    """
    general = get_config().general
    level = level or general.log_level
    format = format or general.log_format  # type: ignore[assignment]
    log_file = log_file or paths.log_path
    max_bytes = max_bytes or general.log_max_bytes
    backup_count = backup_count or general.log_backup_count

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    # Clear existing handlers
    root_logger.handlers.clear()

    if format == "json":
        console_formatter: logging.Formatter = JsonFormatter()
        file_formatter: logging.Formatter = JsonFormatter()
    else:
        console_formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        file_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.warning("Could not create log file at %s: %s", log_file, e)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class LogContext:
    """Context manager for adding extra fields to log records.

    Usage:
        with LogContext(session_id="SESSION-1"):
            logger.info("Recording evidence")  # Includes session_id
    """

    def __init__(self, **kwargs: Any):
        self.extra = kwargs
        self.old_factory: Any = None

    def __enter__(self) -> "LogContext":
        self.old_factory = logging.getLogRecordFactory()

        extra = self.extra
        old_factory = self.old_factory

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = old_factory(*args, **kwargs)
            for key, value in extra.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args: Any) -> None:
        logging.setLogRecordFactory(self.old_factory)


def log_engine_operation(
    operation: str,
    session_id: str,
    duration_ms: float | None = None,
    error: str | None = None,
    **fields: Any,
) -> None:
    """Log an engine operation with structured data."""
    logger = logging.getLogger("hypolab.engine")

    log_data: dict[str, Any] = {"operation": operation, "session_id": session_id, **fields}
    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    if error:
        logger.error("Engine operation failed: %s - %s", operation, error, extra=log_data)
    else:
        logger.debug("Engine operation: %s", operation, extra=log_data)
