"""Structured logging helpers."""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Iterator

_LOG_FORMAT = "%(message)s"
_REQUEST_ID: ContextVar[str | None] = ContextVar("request_id", default=None)
_SESSION_ID: ContextVar[str | None] = ContextVar("session_id", default=None)

# Field names whose values must never reach the log stream.
_SECRET_FIELDS = {"authorization", "client_secret", "id_token", "token", "access_token", "password"}
_REDACTED = "[REDACTED]"


def _timestamp() -> str:
    """Return an ISO-8601 timestamp with millisecond precision."""

    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds")


def redact(value: Any) -> Any:
    """Return ``value`` with secret-bearing mapping entries masked."""

    if isinstance(value, dict):
        return {
            key: _REDACTED if str(key).lower() in _SECRET_FIELDS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def set_request_id(request_id: str | None) -> Token[str | None]:
    """Bind the request identifier into the logging context."""

    return _REQUEST_ID.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _REQUEST_ID.reset(token)


def get_request_id() -> str | None:
    return _REQUEST_ID.get()


@contextmanager
def bound_session(session_id: str | None) -> Iterator[None]:
    """Attach ``session_id`` to every log line emitted inside the block."""

    token = _SESSION_ID.set(session_id)
    try:
        yield
    finally:
        _SESSION_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "timestamp": getattr(record, "timestamp", _timestamp()),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        session_id = _SESSION_ID.get()
        if session_id:
            payload["session_id"] = session_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key.startswith("_json_"):
                field = key[6:]
                payload[field] = _REDACTED if field.lower() in _SECRET_FIELDS else redact(value)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure application-wide JSON logging on stdout."""

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(_LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    # httpx logs every request line at INFO, including full URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def json_log(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    exc_info: BaseException | None = None,
    **fields: Any,
) -> None:
    """Emit a structured JSON log entry with optional payload fields."""

    extras = {f"_json_{key}": value for key, value in fields.items()}
    extras.setdefault("timestamp", _timestamp())
    request_id = get_request_id()
    if request_id:
        extras.setdefault("request_id", request_id)
    logger.log(level, message, exc_info=exc_info, extra=extras)


__all__ = [
    "JsonLogFormatter",
    "bound_session",
    "configure_logging",
    "get_request_id",
    "json_log",
    "redact",
    "reset_request_id",
    "set_request_id",
]
