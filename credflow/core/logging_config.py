"""
Structured Logging Configuration for CREDFLOW

Provides JSON-formatted logging for production with:
- Request ID tracking (API requests)
- Execution ID tracking (engine runs, resumes, queue items)
- Structured fields passed through `extra={...}`
- Console and optional file handlers
"""

import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from contextvars import ContextVar
import os

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
execution_id_var: ContextVar[Optional[int]] = ContextVar('execution_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info', 'taskName',
])


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log line.

    Fields: timestamp, level, logger, message, request_id / execution_id
    (when set), exception, and a "context" object with the extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        execution_id = execution_id_var.get()
        if execution_id is not None:
            log_data["execution_id"] = execution_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Format: [TIMESTAMP] LEVEL - logger - message (request_id=..., execution_id=...)
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        tags = []
        request_id = request_id_var.get()
        if request_id:
            tags.append(f"request_id={request_id}")
        execution_id = execution_id_var.get()
        if execution_id is not None:
            tags.append(f"execution_id={execution_id}")
        if tags:
            base += f" ({', '.join(tags)})"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure the root logger for CREDFLOW (API process or Celery worker).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSON formatter (production), else standard formatter
        log_file: Optional file path to write logs to

    Environment Variables:
        LOG_LEVEL, JSON_LOGS ("true"/"false"), LOG_FILE override the arguments.
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "level": level,
            "json_logs": json_logs,
            "log_file": log_file or "none"
        }
    )


def set_request_id(request_id: str) -> None:
    """Set request ID for the current context (called by the API middleware)."""
    request_id_var.set(request_id)


def clear_request_id() -> None:
    request_id_var.set(None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_execution_id(execution_id: Optional[int]) -> None:
    """Tag subsequent log lines with the execution being advanced."""
    execution_id_var.set(execution_id)


def get_execution_id() -> Optional[int]:
    return execution_id_var.get()
