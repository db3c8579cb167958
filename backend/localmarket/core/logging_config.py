from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_STANDARD_RECORD_KEYS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime", "taskName"}
)
_HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
_MAX_TEXT = 2000


class RequestIdFilter(logging.Filter):
    """Stamp every record with the id of the request being served, or "-"."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not getattr(record, "request_id", None):
            record.request_id = request_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value[:_MAX_TEXT]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in list(value.items())[:50]}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in list(value)[:100]]
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)[:_MAX_TEXT]


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_RECORD_KEYS or key.startswith("_") or key == "request_id":
            continue
        extras[key] = _json_safe(value)
    return extras


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra=` fields are carried as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        extras = _extra_fields(record)
        for field in _HTTP_FIELDS:
            if field in extras:
                payload[field] = extras.pop(field)
        payload.update(extras)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human readable lines with the `extra=` fields appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += " " + " ".join(f"{key}={value}" for key, value in extras.items())
        return line


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Configure the root logger with a request-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JsonFormatter() if json_logs else TextFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # SQL echo is controlled by the engine, not by the root level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
