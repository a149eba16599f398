"""
chatusage - Structured JSON Logging

One JSON object per log line, with the current chat turn (or HTTP request)
attached automatically.

Usage:
    from chatusage.observability.logging import setup_logging, get_logger

    setup_logging(level="INFO")

    logger = get_logger(__name__)
    logger.info("Usage log persisted", total_tokens=620)

Output:
    {"timestamp": "2024-01-15T10:30:00+00:00", "level": "INFO", "logger": "chatusage.usage",
     "message": "Usage log persisted", "session_id": "s-1", "message_id": "m-1",
     "total_tokens": 620}

LOG_LEVEL and LOG_FORMAT (json | text) configure logging on first use of
get_logger() when setup_logging() has not been called.
"""

import asyncio
import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional, Union


# ============================================================
# Turn Context
# ============================================================

_current_context: ContextVar[Optional["LogContext"]] = ContextVar("chatusage_log_context", default=None)


@dataclass(frozen=True)
class LogContext:
    """
    Identifiers attached to every log line of a turn or request.

    Stored in a ContextVar, so each asyncio task sees its own value.
    """
    request_id: str = ""
    session_id: str = ""
    message_id: str = ""
    user_id: str = ""
    model: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        return _current_context.get()

    @classmethod
    def set_current(cls, ctx: Optional["LogContext"]):
        return _current_context.set(ctx)

    @classmethod
    def clear(cls) -> None:
        _current_context.set(None)

    def bind(self, **values) -> "LogContext":
        """Copy with known fields replaced and anything else added to extra."""
        known = {f.name for f in fields(self)} - {"extra"}
        direct = {k: v for k, v in values.items() if k in known}
        extra = {**self.extra, **{k: v for k, v in values.items() if k not in known}}
        return replace(self, extra=extra, **direct)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "extra" and getattr(self, f.name)
        }
        data.update(self.extra)
        return data


def log_context(**values):
    """
    Decorator binding extra context fields for the duration of a call.

    The previous context is restored when the call returns.

    Usage:
        @log_context(operation="daily_rollup")
        async def update_daily_stats(...):
            logger.info("Rolling up")  # carries operation="daily_rollup"
    """
    def decorator(func):
        def _bind():
            current = LogContext.get_current() or LogContext()
            return LogContext.set_current(current.bind(**values))

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                token = _bind()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _current_context.reset(token)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            token = _bind()
            try:
                return func(*args, **kwargs)
            finally:
                _current_context.reset(token)
        return sync_wrapper

    return decorator


# ============================================================
# Formatting
# ============================================================

REDACTED = "[REDACTED]"

_SENSITIVE_MARKERS = (
    "password", "secret", "api_key", "apikey",
    "authorization", "credential", "private_key",
)

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


class JSONFormatter(logging.Formatter):
    """Renders a record, its extra fields and the current LogContext as JSON."""

    def __init__(self, include_location: bool = False, redact_sensitive: bool = True):
        super().__init__()
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_location:
            payload["location"] = f"{record.filename}:{record.lineno}"

        ctx = LogContext.get_current()
        if ctx is not None:
            payload.update(ctx.to_dict())

        payload.update(self._extra_fields(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)

    def _extra_fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        extra = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS:
                continue
            extra[key] = REDACTED if self.redact_sensitive and is_sensitive(key) else value
        return extra


# ============================================================
# Logger
# ============================================================

_PASSTHROUGH_KWARGS = ("exc_info", "stack_info", "stacklevel")


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger accepting structured fields as keyword arguments.

        logger.warning("Primary usage store failed", store="postgres", error=str(e))
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        passthrough = {k: kwargs.pop(k) for k in _PASSTHROUGH_KWARGS if k in kwargs}
        extra = dict(kwargs.pop("extra", None) or {})
        extra.update(kwargs)
        passthrough["extra"] = extra
        return msg, passthrough


_configured = False

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncpg", "uvicorn.access")


def setup_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = True,
    include_location: bool = False,
    redact_sensitive: bool = True,
) -> None:
    """
    Route all logging to stdout, as JSON or plain text.

    Replaces any handlers already installed on the root logger.
    """
    global _configured

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter(include_location, redact_sensitive))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> StructuredLogger:
    if not _configured:
        setup_logging(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_output=os.getenv("LOG_FORMAT", "json").lower() != "text",
        )
    return StructuredLogger(logging.getLogger(name))


# ============================================================
# Timing
# ============================================================

class TimedOperation:
    """
    Measures a block and logs its duration on exit.

        with TimedOperation("conversation_limitation", logger) as timer:
            result = limiter.limit_conversation(messages)
        timer.duration_ms
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        log_level: int = logging.DEBUG,
        **fields_,
    ):
        self.operation = operation
        self.logger = logger or get_logger(__name__)
        self.log_level = log_level
        self.fields = fields_
        self._started = 0.0
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "TimedOperation":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        duration = round(self.duration_ms, 2)
        if exc_type is None:
            self.logger.log(
                self.log_level, "%s completed", self.operation,
                operation=self.operation, duration_ms=duration, **self.fields,
            )
        else:
            self.logger.error(
                "%s failed", self.operation,
                operation=self.operation, duration_ms=duration, error=str(exc), **self.fields,
            )
