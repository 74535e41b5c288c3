"""Logging configuration for the workflow engine."""

import logging
import sys
import json
import traceback
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator
from pathlib import Path


# Fields describing the request, run and node a log record belongs to.
# Each asyncio task sees its own copy, so concurrent runs never mix fields.
_run_context: ContextVar[Dict[str, Any]] = ContextVar("agentflow_log_context", default={})

RUN_FIELDS = ("execution_id", "workflow_id", "node_id")


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception information if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        # Add context and extra fields if present
        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class RunContextFilter(logging.Filter):
    """
    Attach the current logging context to every record.

    Context fields land in ``record.extra_fields`` for the structured
    formatter. Fields passed explicitly through ``extra`` win over context
    fields of the same name. ``record.run`` carries a short
    ``[execution/node]`` tag that plain format strings can reference.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _run_context.get()
        explicit = getattr(record, 'extra_fields', None) or {}
        record.extra_fields = {**context, **explicit}

        tag = "/".join(str(context[field]) for field in ("execution_id", "node_id") if context.get(field))
        record.run = f"[{tag}]" if tag else ""
        return True


_context_filter = RunContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string; may reference ``%(run)s``
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    # Create formatters
    if structured:
        formatter = StructuredFormatter()
    else:
        # Use custom format if provided, otherwise use default
        if log_format is None:
            log_format = "%(asctime)s - %(name)s - %(levelname)s - %(run)s %(message)s"

        formatter = logging.Formatter(
            fmt=log_format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Add console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    # Add file handler with rotation if specified
    if log_file:
        from logging.handlers import RotatingFileHandler

        # Ensure log directory exists
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    # Configure specific loggers with appropriate levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    # Set workflow engine loggers to appropriate levels
    logging.getLogger("agentflow.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)
    logging.getLogger("agentflow.api").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def get_logging_context() -> Dict[str, Any]:
    return dict(_run_context.get())


def set_logging_context(**kwargs) -> Token:
    """
    Add fields to the logging context of the current task.

    Returns a token for ``clear_logging_context``. Tasks started afterwards
    inherit the fields; tasks already running do not see them.
    """
    return _run_context.set({**_run_context.get(), **kwargs})


def clear_logging_context(token: Optional[Token] = None):
    """Restore the context in place before ``token`` was issued, or drop every field."""
    if token is None:
        _run_context.set({})
    else:
        _run_context.reset(token)


@contextmanager
def logging_context(**kwargs) -> Iterator[Dict[str, Any]]:
    """Scope ``kwargs`` to the enclosed block."""
    token = set_logging_context(**kwargs)
    try:
        yield get_logging_context()
    finally:
        clear_logging_context(token)


class ErrorRecoveryLogger:
    """Specialized logger for retry and recovery operations."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"agentflow.recovery.{component_name}")
        self.component_name = component_name

    def _log(self, level: int, message: str, operation: str, **fields):
        fields.update(component=self.component_name, operation=operation)
        self.logger.log(level, message, extra={"extra_fields": fields})

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        """Log a retry about to happen."""
        self._log(
            logging.WARNING,
            f"Retry {attempt}/{max_attempts - 1} for {operation}: {error}",
            operation,
            error_type=type(error).__name__,
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_recovery_success(self, operation: str, attempts_used: int):
        self._log(
            logging.INFO,
            f"{operation} succeeded after {attempts_used} attempts",
            operation,
            attempts_used=attempts_used,
            recovery_status="success"
        )

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        self._log(
            logging.ERROR,
            f"{operation} failed after {attempts_used} attempts: {final_error}",
            operation,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used,
            recovery_status="failed"
        )
