"""Structured JSON audit logging.

Provides a dedicated audit logger that writes structured JSON records for
security-relevant events: sign-in and sign-out, rate limiting, and fallbacks
where the throttle let traffic through because its store was unavailable.

Uses Python's standard logging module with a JSON formatter so records can be
ingested by any log aggregation system. Client identity is always the opaque
client key, never a raw IP address.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any


class _JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "event": getattr(record, "event", record.getMessage()),
            "logger": record.name,
        }

        # Merge extra fields passed via `extra={"audit": {...}}`
        audit_data = getattr(record, "audit", None)
        if isinstance(audit_data, dict):
            log_data.update(audit_data)

        return json.dumps(log_data, default=str)


def _setup_audit_logger() -> logging.Logger:
    """Create and configure the audit logger with JSON formatting."""
    audit_logger = logging.getLogger("audit")
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    # Only add handler if not already present (avoid duplicates on reload)
    if not audit_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_JSONFormatter())
        audit_logger.addHandler(handler)

    return audit_logger


_audit = _setup_audit_logger()


def log_auth_event(
    action: str,
    *,
    user_id: str | None = None,
    email: str | None = None,
    client_key: str | None = None,
    success: bool = True,
    detail: str | None = None,
) -> None:
    """Log an authentication event (sign-in, sign-out, failed verification)."""
    _audit.info(
        "auth_event",
        extra={
            "audit": {
                "category": "auth",
                "action": action,
                "user_id": user_id,
                "email": email,
                "client_key": client_key,
                "success": success,
                "detail": detail,
            }
        },
    )


def log_rate_limit(
    *,
    client_key: str | None = None,
    route: str | None = None,
    limit: int | None = None,
    window_ms: int | None = None,
    reset_time: int | None = None,
) -> None:
    """Log a rate limit hit (429)."""
    _audit.warning(
        "rate_limit_hit",
        extra={
            "audit": {
                "category": "rate_limit",
                "client_key": client_key,
                "route": route,
                "limit": limit,
                "window_ms": window_ms,
                "reset_time": reset_time,
            }
        },
    )


def log_rate_limit_fail_open(
    *,
    route: str | None = None,
    client_key: str | None = None,
    error: str | None = None,
) -> None:
    """Log a throttle decision that was skipped because storage failed."""
    _audit.error(
        "rate_limit_fail_open",
        extra={
            "audit": {
                "category": "rate_limit",
                "route": route,
                "client_key": client_key,
                "error": error,
            }
        },
    )
