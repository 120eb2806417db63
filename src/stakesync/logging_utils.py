from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from stakesync.logging_context import LOG_CONTEXT_FIELDS, get_logging_context
from stakesync.security.redaction import redact_value, sanitize_text


class JsonFormatter(logging.Formatter):
    """One JSON object per record: message, ``extra={"extra": {...}}`` payload and sync context."""

    def __init__(self, known_secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self.known_secrets = tuple(secret for secret in known_secrets if secret)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        for field in LOG_CONTEXT_FIELDS:
            payload[field] = context.get(field, payload.get(field))

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        rendered = json.dumps(redact_value(payload), default=str)
        if self.known_secrets:
            rendered = sanitize_text(rendered, known_secrets=self.known_secrets)
        return rendered


def _level(value: str | int | None, default: int) -> int:
    if isinstance(value, int):
        return value
    if value is None or not str(value).strip():
        return default
    resolved = logging.getLevelName(str(value).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None, *, known_secrets: Iterable[str] = ()) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(known_secrets))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root_level = _level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)
    root.setLevel(root_level)

    # httpx logs every request URL at INFO, which would repeat each page fetch.
    http_default = logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(_level(os.getenv("HTTPX_LOG_LEVEL"), http_default))
    logging.getLogger("httpcore").setLevel(_level(os.getenv("HTTPCORE_LOG_LEVEL"), http_default))
