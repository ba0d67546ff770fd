"""Structured JSON logging for the Pooled Reason API.

This module provides:
- JSON-formatted log output for production environments
- Context via ContextVar (request_id, session_id, task_id)
- Human-readable format for development
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Context variables for request and automation-session tracing
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)
task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return request_id_var.get()


def get_session_id() -> str | None:
    """Get the current automation session ID from context."""
    return session_id_var.get()


def get_task_id() -> str | None:
    """Get the current automation task ID from context."""
    return task_id_var.get()


def set_request_context(
    request_id: str | None = None,
    session_id: str | None = None,
    task_id: str | None = None,
):
    """Set request context variables."""
    if request_id is not None:
        request_id_var.set(request_id)
    if session_id is not None:
        session_id_var.set(session_id)
    if task_id is not None:
        task_id_var.set(task_id)


def clear_request_context():
    """Clear all request context variables."""
    request_id_var.set(None)
    session_id_var.set(None)
    task_id_var.set(None)


_STANDARD_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-01-29T12:34:56.789Z",
        "level": "INFO",
        "logger": "services.step_pool",
        "message": "Flushing step 3",
        "request_id": "abc-123",
        "session_id": "sess-1",
        "task_id": "task-9",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        session_id = get_session_id()
        task_id = get_task_id()

        if request_id:
            log_data["request_id"] = request_id
        if session_id:
            log_data["session_id"] = session_id
        if task_id:
            log_data["task_id"] = task_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
            log_data["exception_type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )

        # Fields passed via logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }

        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter for development.

    Output format:
    2026-01-29 12:34:56.789 | INFO     | services.step_pool | [req-abc1] Flushing step 3
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level = record.levelname.ljust(8)
        message = record.getMessage()

        request_id = get_request_id()
        if request_id:
            short_id = request_id[:8] if len(request_id) > 8 else request_id
            prefix = f"[{short_id}] "
        else:
            prefix = ""

        formatted = f"{timestamp} | {level} | {record.name} | {prefix}{message}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service_name: str = "pooled-reason-api",
):
    """Configure the root logger with structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format. If None, auto-detect from environment.
        service_name: Service name for log identification
    """
    if json_format is None:
        debug_mode = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
        json_format = not debug_mode

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("neo4j").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured for {service_name}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the module.

    Relies on configure_logging() being called at startup, and falls
    back to a default configuration if it was not.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if not logging.getLogger().handlers:
        configure_logging()

    return logger


class LogContext:
    """Context manager for setting log context.

    Usage:
        async with LogContext(session_id="sess-1", task_id="task-9"):
            logger.info("This log will include the session and task")
    """

    def __init__(
        self,
        request_id: str | None = None,
        session_id: str | None = None,
        task_id: str | None = None,
    ):
        self.request_id = request_id
        self.session_id = session_id
        self.task_id = task_id
        self._tokens: list = []

    def __enter__(self):
        if self.request_id:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.session_id:
            self._tokens.append((session_id_var, session_id_var.set(self.session_id)))
        if self.task_id:
            self._tokens.append((task_id_var, task_id_var.set(self.task_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
