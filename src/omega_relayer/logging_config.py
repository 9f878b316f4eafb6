"""Structured logging configuration with per-intent context.

This module provides structured JSON logging with:
- Context variables identifying the flow, source identifier and asset
  currently being processed by the pipeline
- Consistent log formatting across pollers, listener and executor
"""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Context variables set by the pipeline for the intent in flight
flow_var: ContextVar[Optional[str]] = ContextVar("flow", default=None)
source_id_var: ContextVar[Optional[str]] = ContextVar("source_id", default=None)
asset_id_var: ContextVar[Optional[str]] = ContextVar("asset_id", default=None)

_CONTEXT_FIELDS = ("flow", "source_id", "asset_id")

_RESERVED_ATTRS = frozenset((
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
) + _CONTEXT_FIELDS)


class IntentContextFilter(logging.Filter):
    """Logging filter that adds the current intent context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.flow = flow_var.get()
        record.source_id = source_id_var.get()
        record.asset_id = asset_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed through logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


@contextmanager
def intent_context(
    flow: Optional[str] = None,
    source_id: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> Iterator[None]:
    """Bind flow/source/asset to every log record emitted inside the block."""
    tokens = [
        flow_var.set(flow),
        source_id_var.set(source_id),
        asset_id_var.set(asset_id),
    ]
    try:
        yield
    finally:
        asset_id_var.reset(tokens[2])
        source_id_var.reset(tokens[1])
        flow_var.reset(tokens[0])


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the relayer process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(flow)s %(source_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(IntentContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(IntentContextFilter())
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
