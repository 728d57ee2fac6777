"""
Logging utilities for the memory pipeline.

Provides structured logging with correlation fields for tracing a memory
through the pipeline (memory → chunk → embedder → attempt). Components
receive their logger through the constructor; per-unit-of-work context is
attached with bind_logger() instead of global state.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, Union


PACKAGE_LOGGER = "memory_pipeline"

CORRELATION_FIELDS = (
    "worker_id",
    "memory_id",
    "chunk_id",
    "embedder_id",
    "attempt",
)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (memory_id, chunk_id, worker_id, ...)
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.

    Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [worker_id=X memory_id=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            fmt = "%(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        context_parts = []
        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges bound fields into every record's extra."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **fields: Any) -> "ContextAdapter":
        merged = dict(self.extra)
        merged.update({k: v for k, v in fields.items() if v is not None})
        return ContextAdapter(self.logger, merged)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a logger instance for the pipeline.

    Args:
        name: Logger name (typically __name__ of the calling module)
        level: Optional logging level override

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def bind_logger(logger: Optional[LoggerLike], **fields: Any) -> ContextAdapter:
    """
    Attach correlation fields to a logger.

    Args:
        logger: Base logger or adapter (defaults to the package logger)
        **fields: Correlation fields, None values are dropped

    Returns:
        Adapter that adds the fields to every record

    Example:
        >>> log = bind_logger(self.logger, worker_id="w-1", chunk_id=chunk.chunk_id)
        >>> log.info("Chunk generated")
    """
    if logger is None:
        logger = logging.getLogger(PACKAGE_LOGGER)
    if isinstance(logger, ContextAdapter):
        return logger.bind(**fields)
    return ContextAdapter(logger, {k: v for k, v in fields.items() if v is not None})


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    structured: bool = False,
) -> logging.Logger:
    """
    Configure the package logger.

    Called by the worker entry point on startup; library code never
    configures handlers itself.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom format string (ignored if structured=True)
        include_timestamp: Whether to include timestamp in log messages
        structured: If True, output JSON-structured logs; if False, human-readable

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)

    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)

        if structured:
            formatter = StructuredFormatter(include_timestamp=include_timestamp)
        elif format_string:
            formatter = logging.Formatter(format_string)
        else:
            formatter = HumanReadableFormatter(include_timestamp=include_timestamp)

        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    return package_logger
