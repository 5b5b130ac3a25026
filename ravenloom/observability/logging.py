"""
Structured JSON logging with request correlation.

Features:
- JSON-formatted log entries
- Request, user and team correlation from context variables
- Timestamp in ISO format
- Sensitive field redaction (passwords, tokens)
"""
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from pythonjsonlogger.json import JsonFormatter

# Context variables for request correlation
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
_team_id: ContextVar[Optional[str]] = ContextVar("team_id", default=None)

SENSITIVE_FIELDS = {
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "authorization", "credential", "private_key",
}

REDACTED_VALUE = "[REDACTED]"


def set_request_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    team_id: Optional[str] = None,
) -> None:
    """Set the request context for logging correlation."""
    if request_id:
        _request_id.set(request_id)
    if user_id:
        _user_id.set(user_id)
    if team_id:
        _team_id.set(team_id)


def clear_request_context() -> None:
    """Clear the request context."""
    _request_id.set(None)
    _user_id.set(None)
    _team_id.set(None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return _request_id.get()


def _should_redact(field_name: str) -> bool:
    field_lower = field_name.lower()
    return any(sensitive in field_lower for sensitive in SENSITIVE_FIELDS)


class CorrelatedJsonFormatter(JsonFormatter):
    """
    JSON log formatter with correlation IDs and sensitive field redaction.

    Adds:
    - timestamp: ISO format timestamp
    - level: Log level name
    - logger: Logger name
    - request_id / user_id / team_id: correlation from context (None outside a request)
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if "message" not in log_record:
            log_record["message"] = record.getMessage()

        log_record["request_id"] = _request_id.get()
        log_record["user_id"] = _user_id.get()
        log_record["team_id"] = _team_id.get()

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
            log_record["traceback"] = "".join(traceback.format_exception(*record.exc_info))

        for key in list(log_record.keys()):
            if _should_redact(key) and log_record[key] not in (None, REDACTED_VALUE):
                log_record[key] = REDACTED_VALUE


def get_json_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for JSON output.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)


def setup_logging(
    level: int | str = logging.INFO,
    format_json: bool = True,
) -> None:
    """
    Configure root logger with JSON formatting.

    Args:
        level: Log level (default: INFO)
        format_json: Use JSON formatting (default: True)
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if format_json:
        formatter = CorrelatedJsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
