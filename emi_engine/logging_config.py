"""
Structured Logging Configuration Module

Every loan and lending mutation emits one log line tagged with the owning
user, the operation name and the record it touched (``loan:<id>`` or
``lending:<id>``). Lines are JSON by default so they can be shipped as-is;
a plain text format is available for local runs.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes log_action may attach, in output order
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields appear only when set"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _build_handler(fmt: str, log_file: Optional[str]) -> logging.Handler:
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if fmt == "text" else JSONFormatter())
    return handler


def setup_logging(level: str = "INFO", logger_name: str = "emi_engine",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Route the engine's loggers to a single handler.

    Calling it again replaces the handler instead of stacking another one,
    so the API factory can run more than once in a process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Parent logger of the engine's modules
        fmt: "json" for structured output, "text" for plain lines
        log_file: File to append to; stderr when omitted
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_build_handler(fmt, log_file))
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "emi_engine") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a loan or lending operation with its context.

    Args:
        logger: Logger of the calling module
        level: Level name, e.g. "info" or "warning"
        message: Human readable summary
        user_id: Owner of the record
        action: Operation name, e.g. "record_payment"
        resource: Record touched, e.g. "loan:<id>"
        correlation_id: Request id when called from the API
        extra: Operation specific figures (amounts as strings, counts)
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    values = (correlation_id, user_id, action, resource, extra)
    context = {name: value for name, value in zip(CONTEXT_FIELDS, values) if value}
    logger.log(levelno, message, extra=context, stacklevel=2)
