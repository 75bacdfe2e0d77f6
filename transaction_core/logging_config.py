"""
Structured Logging Configuration Module

JSON log lines for every money-movement step. The correlation id of the
request being served is picked up from a context variable, so code deep in
the orchestrator never has to pass it around.
"""

import contextvars
import logging
import json
from datetime import datetime, timezone
from typing import Optional


_correlation_id = contextvars.ContextVar('correlation_id', default=None)

# Attributes copied from a LogRecord into the JSON line when present
STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str]) -> contextvars.Token:
    """Bind a correlation id for the current request; keep the token to undo it"""
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, omitting empty fields"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if field == "correlation_id":
                value = value or get_correlation_id()
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "transaction_core",
                  log_format: str = "json") -> logging.Logger:
    """
    Configure the package logger with a single stderr handler.

    Calling it again replaces the previous handler. log_format is "json"
    for structured lines or "text" for a plain one-line format.
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    # Handled here only, never again by the root logger
    logger.propagate = False
    return logger


def get_logger(name: str = "transaction_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, critical)
        message: Log message
        action: Action being performed
        resource: Resource acted upon, as "<kind>:<id>"
        correlation_id: Overrides the id bound to the current context
        extra: Additional structured data
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    record.correlation_id = correlation_id or get_correlation_id()
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if extra:
        record.extra = extra
    logger.handle(record)
