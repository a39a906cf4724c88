"""
Structured logging with correlation id support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound correlation_id so a renewal pass or webhook delivery can be
  followed across provider calls and store writes.
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional
from uuid import uuid4

LOGGER_NAME = "billing_engine"

correlation_id_ctx_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Never emitted verbatim, even when passed through log_event(extra=...)
_REDACTED_KEYS = {"secret_key", "client_secret", "webhook_secret", "access_token", "authorization", "card"}


def get_correlation_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current correlation_id from context (if any)."""
    cid = correlation_id_ctx_var.get()
    return cid if cid is not None else default


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a unit of work."""
    cid = correlation_id or uuid4().hex
    token = correlation_id_ctx_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx_var.reset(token)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class CorrelationIdFilter(logging.Filter):
    """Inject correlation_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        for key in ("billing_id", "user_id", "processor", "event_type", "error_code"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None)
        cid_part = f" [cid={cid}]" if cid else ""
        ts = _format_timestamp(record)
        line = f"{ts} {record.levelname} [billing]{cid_part} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Provider SDK/HTTP client chatter stays at WARNING
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    billing_id: Optional[str] = None,
    processor: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Structured logging helper with safe truncation and correlation."""

    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests, one-off scripts)
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "correlation_id": correlation_id or get_correlation_id(),
        "user_id": user_id,
        "billing_id": billing_id,
        "processor": processor,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = "<redacted>" if k.lower() in _REDACTED_KEYS else _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
