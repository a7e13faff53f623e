"""JSON log lines tagged with the id of the analysis request that produced them."""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

REQUEST_ID_CONTEXT: ContextVar[str | None] = ContextVar("request_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def request_context(request_id: str | None = None) -> Iterator[str]:
    """Bind ``request_id`` (or a fresh one) for the duration of the block."""

    value = request_id or new_request_id()
    token = REQUEST_ID_CONTEXT.set(value)
    try:
        yield value
    finally:
        REQUEST_ID_CONTEXT.reset(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID_CONTEXT.get()
        return True


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited docstring
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "ts": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key != "request_id" and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str, ensure_ascii=False, separators=(",", ":"))


_CONFIGURED = False


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure root logging once; later calls only adjust the level."""

    global _CONFIGURED
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    # httpx logs every request at INFO; provider modules log their own attempts.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.captureWarnings(True)
    _CONFIGURED = True


def format_log_context(details: Dict[str, Any]) -> str:
    """Flatten ``details`` into ``key=value`` pairs for the human-readable message."""

    parts: list[str] = []
    for key, value in details.items():
        if value is None:
            continue
        if isinstance(value, str):
            token = value.strip()
            if not token:
                continue
            parts.append(f"{key}={token.replace(chr(10), ' ')[:200]}")
            continue
        parts.append(f"{key}={value}")
    return " ".join(parts)


__all__ = [
    "REQUEST_ID_CONTEXT",
    "JsonFormatter",
    "RequestIdFilter",
    "format_log_context",
    "new_request_id",
    "request_context",
    "setup_logging",
]
