from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, TextIO

from tradeguard.logging_context import CONTEXT_FIELDS, get_logging_context
from tradeguard.security.redaction import redact_data

# follow the root level only at DEBUG, WARNING otherwise; <NAME>_LOG_LEVEL overrides
_HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One redacted JSON object per record.

    Every context field is present (``None`` when unset). Explicit
    ``extra={"extra": {...}}`` values win over the ambient context.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = get_logging_context()
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **{field: context.get(field) for field in CONTEXT_FIELDS},
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _level_named(name: str | None, default: int) -> int:
    if name is None or not name.strip():
        return default
    resolved = logging.getLevelName(name.strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str = "INFO", *, stream: TextIO | None = None) -> None:
    """Route the root logger through ``JsonFormatter`` on stderr (or ``stream``)."""

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    resolved_level = _level_named(level, logging.INFO)
    root.setLevel(resolved_level)

    client_default = logging.DEBUG if resolved_level <= logging.DEBUG else logging.WARNING
    for name in _HTTP_CLIENT_LOGGERS:
        override = os.getenv(f"{name.upper()}_LOG_LEVEL")
        logging.getLogger(name).setLevel(_level_named(override, client_default))
