"""
Structured logging for the entitlement engine.

- JSON lines in production, one readable line per record in development.
- Two correlation ids travel through ContextVars: request_id (HTTP requests)
  and sweep_id (reconciler runs). Both are stamped on every record.
- Anything passed through `extra` (user_id, subscription_id, feature,
  gateway_reference_id...) ends up as a top-level field.
- Fields that look like credentials are masked before they are written.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

ROOT_LOGGER = "entitlements"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
sweep_id_ctx_var: ContextVar[Optional[str]] = ContextVar("sweep_id", default=None)

_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id", "sweep_id"}
_SECRET_MARKERS = ("secret", "password", "api_key", "signature", "authorization")
_MAX_FIELD_LENGTH = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_sweep_id(sweep_id: str) -> Iterator[str]:
    """Tag every record logged inside the block with the reconciler run id."""
    token = sweep_id_ctx_var.set(sweep_id)
    try:
        yield sweep_id
    finally:
        sweep_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _clip(value: object) -> object:
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    text = str(value)
    if len(text) <= _MAX_FIELD_LENGTH:
        return text
    return text[:_MAX_FIELD_LENGTH] + "...<truncated>"


def structured_fields(record: logging.LogRecord) -> Dict[str, object]:
    fields: Dict[str, object] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        fields[key] = "***" if _is_secret(key) else value
    return fields


class CorrelationFilter(logging.Filter):
    """Stamp request_id and sweep_id from context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "sweep_id", None) is None:
            record.sweep_id = sweep_id_ctx_var.get()
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        sweep_id = getattr(record, "sweep_id", None)
        if sweep_id:
            payload["sweep_id"] = sweep_id
        payload.update(structured_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = []
        for name in ("request_id", "sweep_id"):
            value = getattr(record, name, None)
            if value:
                tags.append(f"{name.split('_')[0]}={value}")
        tag_part = f" [{' '.join(tags)}]" if tags else ""
        fields = " ".join(f"{k}={v}" for k, v in structured_fields(record).items() if v is not None)
        line = f"{_timestamp(record)} {record.levelname:<7} {record.name}{tag_part} {record.getMessage()}"
        if fields:
            line = f"{line} | {fields}"
        if record.exc_info:
            line = line + "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install the engine's handler on the `entitlements` logger tree."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(CorrelationFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # SQLAlchemy echo goes through its own logger; keep it quiet unless asked
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    subscription_id: Optional[int] = None,
    feature: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Emit one structured record with the engine's common identifiers."""
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {"request_id": request_id or get_request_id(), "user_id": user_id}
    optional = {
        "subscription_id": subscription_id,
        "feature": feature,
        "event_type": event_type,
        "error_code": error_code,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    for key, value in (extra or {}).items():
        if key in _STANDARD_ATTRS:
            key = f"field_{key}"
        payload[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
