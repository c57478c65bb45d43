"""Structured logging configuration for Recollect."""

import json
import logging
import sys
import time
import uuid
from typing import Callable
from contextvars import ContextVar
from functools import wraps

# Context variable for operation tracking
operation_id_var: ContextVar[str] = ContextVar('operation_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "operation_id": operation_id_var.get(''),
        }

        # Add extra fields
        if hasattr(record, 'duration_ms'):
            log_data['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_data['operation'] = record.operation
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(level: str = "INFO", structured: bool = False) -> None:
    """Configure the root logger for CLI and daemon use (stderr only)."""
    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def with_operation_id(func: Callable) -> Callable:
    """Decorator to tag an async operation with an ID and log its duration."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        operation_id = str(uuid.uuid4())[:8]
        token = operation_id_var.set(operation_id)
        start = time.perf_counter()

        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger = logging.getLogger(func.__module__)
            logger.info(
                "Operation completed",
                extra={'duration_ms': round(duration_ms, 2), 'operation': func.__name__}
            )
            operation_id_var.reset(token)

    return wrapper
