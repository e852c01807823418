"""
ToolStream - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar

from toolstream.core.config import settings


# Context variables for session tracing
session_id_var: ContextVar[str] = ContextVar('session_id', default='')
iteration_var: ContextVar[int] = ContextVar('iteration', default=0)
tool_call_id_var: ContextVar[str] = ContextVar('tool_call_id', default='')


def get_session_id() -> str:
    """Get current session ID from context"""
    return session_id_var.get() or ''


def set_session_id(session_id: str) -> None:
    """Set session ID in context"""
    session_id_var.set(session_id)


def get_iteration() -> int:
    """Get current iteration number from context"""
    return iteration_var.get() or 0


def set_iteration(iteration: int) -> None:
    """Set iteration number in context"""
    iteration_var.set(iteration)


def get_tool_call_id() -> str:
    """Get current tool call ID from context"""
    return tool_call_id_var.get() or ''


def set_tool_call_id(tool_call_id: str) -> None:
    """Set tool call ID in context"""
    tool_call_id_var.set(tool_call_id)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    Outputs logs in a format easily parsed by log aggregation tools (ELK, CloudWatch, etc.)
    """

    RESERVED = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'pathname', 'process', 'processName', 'relativeCreated',
        'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
        'message', 'taskName',
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        session_id = get_session_id()
        if session_id:
            log_data["session_id"] = session_id

        iteration = get_iteration()
        if iteration:
            log_data["iteration"] = iteration

        tool_call_id = get_tool_call_id()
        if tool_call_id:
            log_data["tool_call_id"] = tool_call_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in self.RESERVED and not key.startswith('_'):
                log_data.setdefault(key, value)

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that adds session context (session_id, iteration, tool_call_id)
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.session_id = get_session_id() or '-'
        record.iteration = get_iteration() or '-'
        record.tool_call_id = get_tool_call_id() or '-'

        return super().format(record)


class ToolStreamLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_session_event(self, session_id: str, event: str, **kwargs) -> None:
        """Log agent session lifecycle events"""
        self.info(
            f"Session {session_id}: {event}",
            extra={
                "event_type": "session",
                "session_event": event,
                **kwargs
            }
        )

    def log_tool_event(self, tool_name: str, event: str,
                       duration_ms: Optional[float] = None, **kwargs) -> None:
        """Log tool call events"""
        self.info(
            f"Tool {tool_name}: {event}" +
            (f" ({duration_ms:.2f}ms)" if duration_ms is not None else ""),
            extra={
                "event_type": "tool",
                "tool_name": tool_name,
                "tool_event": event,
                "duration_ms": duration_ms,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=error,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )

    def log_performance(self, operation: str, duration_ms: float,
                        threshold_ms: float = 1000, **kwargs) -> None:
        """Log performance metrics, warn if over threshold"""
        level = logging.WARNING if duration_ms > threshold_ms else logging.DEBUG
        self.log(
            level,
            f"Performance: {operation} took {duration_ms:.2f}ms" +
            (f" (threshold: {threshold_ms}ms)" if duration_ms > threshold_ms else ""),
            extra={
                "event_type": "performance",
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
                "exceeded_threshold": duration_ms > threshold_ms,
                **kwargs
            }
        )


def setup_logging() -> ToolStreamLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(ToolStreamLogger)

    logger = logging.getLogger("toolstream")
    logger.__class__ = ToolStreamLogger  # Logger may exist before the class was registered
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logger.handlers.clear()

    is_production = settings.is_production()

    if is_production:
        json_formatter = JSONFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(json_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(json_formatter)
            logger.addHandler(file_handler)

    else:
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(session_id)s] [iter %(iteration)s] [%(tool_call_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(ContextualFormatter(simple_format))
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(ContextualFormatter(detailed_format))
            logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": is_production
        }
    )

    return logger


# Create logger instance
logger: ToolStreamLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_session_id',
    'set_session_id',
    'get_iteration',
    'set_iteration',
    'get_tool_call_id',
    'set_tool_call_id',
    'ToolStreamLogger',
]
