"""
nrinstall - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging.

Secrets are masked at the sink: every handler carries a RedactingFilter, so
call sites log plainly and never mask by hand.
"""

import logging
import sys
import json
import traceback
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict
from contextvars import ContextVar

from nrinstall.core.config import settings
from nrinstall.core.security import mask_sensitive_data


# Context variables for attempt tracing
attempt_id_var: ContextVar[str] = ContextVar('attempt_id', default='')
integration_var: ContextVar[str] = ContextVar('integration', default='')

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'attempt_id', 'integration',
}


def get_attempt_id() -> str:
    """Get current installation attempt ID from context"""
    return attempt_id_var.get() or ''


def set_attempt_id(attempt_id: str) -> None:
    """Set installation attempt ID in context"""
    attempt_id_var.set(attempt_id)


def get_integration() -> str:
    """Get current integration name from context"""
    return integration_var.get() or ''


def set_integration(integration: str) -> None:
    """Set integration name in context"""
    integration_var.set(integration)


class RedactingFilter(logging.Filter):
    """
    Masks secret values in the rendered message and in string extras.

    The message is rendered once here (msg % args) and the args dropped, so
    downstream formatters see only the masked text.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = mask_sensitive_data(message)
        record.args = None

        for key, value in list(record.__dict__.items()):
            if key in _RECORD_ATTRIBUTES or key.startswith('_'):
                continue
            if isinstance(value, str):
                setattr(record, key, mask_sensitive_data(value))

        if record.exc_info and record.exc_info[1] is not None and not record.exc_text:
            record.exc_text = mask_sensitive_data(
                ''.join(traceback.format_exception(*record.exc_info))
            )
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    Outputs logs in a format easily parsed by log aggregation tools
    """

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

        attempt_id = get_attempt_id()
        if attempt_id:
            log_data["attempt_id"] = attempt_id

        integration = get_integration()
        if integration:
            log_data["integration"] = integration

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": mask_sensitive_data(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": record.exc_text,
            }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that includes context variables (attempt_id, integration)
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.attempt_id = get_attempt_id() or '-'
        record.integration = get_integration() or '-'
        return super().format(record)


class InstallerLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_phase_transition(self, attempt_id: str, from_phase: str, to_phase: str,
                             reason: str = None, **kwargs) -> None:
        """Log an installation state machine transition"""
        self.info(
            f"Attempt {attempt_id}: {from_phase} -> {to_phase}" +
            (f" ({reason})" if reason else ""),
            extra={
                "event_type": "phase_transition",
                "from_phase": from_phase,
                "to_phase": to_phase,
                "reason": reason,
                **kwargs
            }
        )

    def log_execution(self, environment_id: str, exit_code: int,
                      duration_s: float, **kwargs) -> None:
        """Log a finished command run"""
        level = logging.INFO if exit_code == 0 else logging.WARNING
        self.log(
            level,
            f"Command in {environment_id[:12]} exited {exit_code} ({duration_s:.2f}s)",
            extra={
                "event_type": "execution",
                "environment_id": environment_id,
                "exit_code": exit_code,
                "duration_s": duration_s,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
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


def setup_logging() -> InstallerLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(InstallerLogger)

    logger = logging.getLogger("nrinstall")
    logger.__class__ = InstallerLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logger.handlers.clear()
    redacting_filter = RedactingFilter()

    if settings.is_production:
        # Production: JSON formatted logs for log aggregation
        console_formatter = JSONFormatter()
        file_formatter = console_formatter
    else:
        # Development: Human-readable format
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(attempt_id)s] [%(integration)s] | "
            "%(name)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | [%(integration)s] %(message)s"
        console_formatter = ContextualFormatter(simple_format)
        file_formatter = ContextualFormatter(detailed_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(redacting_filter)
    logger.addHandler(console_handler)

    if settings.LOG_FILE:
        log_file = Path(settings.LOG_FILE)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
        except OSError as e:
            logger.warning(f"File logging disabled, cannot open {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(file_formatter)
            file_handler.addFilter(redacting_filter)
            logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": settings.is_production
        }
    )

    return logger


# Create logger instance
logger: InstallerLogger = setup_logging()


# Convenience exports
__all__ = [
    'logger',
    'setup_logging',
    'get_attempt_id',
    'set_attempt_id',
    'get_integration',
    'set_integration',
    'InstallerLogger',
    'RedactingFilter',
    'JSONFormatter',
    'ContextualFormatter',
]
