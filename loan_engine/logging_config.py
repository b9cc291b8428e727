"""
Structured Logging Configuration Module

Lifecycle log lines carry the loan they concern. ``loan_id``, ``status`` and
``version`` ride on the log record and come out as top-level JSON keys (or a
bracketed suffix in text mode), so a log line can be matched to the stored
loan revision and its audit events.
"""

import logging
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# Record attributes emitted alongside the message, in output order
LOAN_FIELDS = ("loan_id", "status", "version", "action", "user_id", "correlation_id")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _loan_context(record: logging.LogRecord) -> Dict[str, Any]:
    context = {}
    for name in LOAN_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = value
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line; loan context fields are top-level keys"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_loan_context(record))

        details = getattr(record, 'details', None)
        if details:
            log_entry['details'] = details

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class LoanTextFormatter(logging.Formatter):
    """Human-readable lines with the loan context appended as key=value pairs"""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def formatMessage(self, record):
        line = super().formatMessage(record)
        context = _loan_context(record)
        if context:
            line += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"
        return line


def setup_logging(level: str = "INFO", logger_name: str = "loan_engine",
                  log_format: str = "json") -> logging.Logger:
    """
    Setup structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output or "text"

    Returns:
        Configured logger instance
    """
    if log_format not in ("json", "text"):
        raise ValueError(f"Unsupported log format: {log_format!r} (expected 'json' or 'text')")

    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else LoanTextFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "loan_engine") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, loan_id: Optional[str] = None,
               status: Any = None, version: Optional[int] = None,
               user_id: Optional[str] = None, correlation_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None):
    """
    Log a loan action with its context as structured fields.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Lifecycle event or refused operation
        loan_id: Loan the action applies to
        status: Loan status after the action (enum members are logged by value)
        version: Stored loan version after the action
        user_id: ID of the user performing the action
        correlation_id: Correlation ID for request tracing
        details: Any further structured data
    """
    if isinstance(status, Enum):
        status = status.value

    fields = {
        "action": action,
        "loan_id": loan_id,
        "status": status,
        "version": version,
        "user_id": user_id,
        "correlation_id": correlation_id,
        "details": details,
    }
    logger.log(
        getattr(logging, level.upper()), message,
        extra={key: value for key, value in fields.items() if value is not None}
    )
