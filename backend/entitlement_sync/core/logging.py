"""Structured logging with correlation IDs.

Every record carries the correlation ID of the request (or webhook delivery)
that produced it, so a single provider event can be followed from signature
check to ledger entry. Values passed under credential-like keys are masked
before they reach a handler.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else was passed through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "correlation_id"}

_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "signature", "api_key")

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe", "celery.app.trace")


def get_correlation_id() -> str:
    """Return the active correlation ID, minting one for out-of-request work."""
    cid = _correlation_id.get()
    if cid is None:
        cid = uuid.uuid4().hex
        _correlation_id.set(cid)
    return cid


def bind_correlation_id(correlation_id: str) -> Token:
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: Token) -> None:
    _correlation_id.reset(token)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def redact(key: str, value: Any) -> Any:
    """Mask a value logged under a credential-like key."""
    if value is None or not is_sensitive_key(key):
        return value
    text = str(value)
    if len(text) <= 8:
        return "[REDACTED]"
    return f"{text[:4]}****"


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service: str = "entitlement-sync", include_stack_trace: bool = True):
        super().__init__()
        self.service = service
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "message": record.getMessage(),
        }

        fields = {
            key: _jsonable(redact(key, value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        }
        if fields:
            payload["fields"] = fields

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            error = {"type": exc_type.__name__, "message": str(exc_value)}
            if self.include_stack_trace:
                error["stack_trace"] = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
            payload["error"] = error

        return json.dumps(payload, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps the correlation ID on records from any logger."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
    service: str = "entitlement-sync",
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Root log level name
        json_format: Emit JSON records instead of plain text lines
        include_stack_trace: Attach formatted tracebacks to JSON error records
        service: Service name stamped on JSON records
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(service=service, include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def _log(logger: logging.Logger, level: int, message: str, exc: Optional[BaseException], extra: dict) -> None:
    extra["correlation_id"] = get_correlation_id()
    logger.log(level, message, exc_info=exc, extra=extra)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with correlation ID and optional exception."""
    _log(logger, logging.ERROR, message, exception, extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.WARNING, message, None, extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.INFO, message, None, extra)
