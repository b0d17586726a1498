"""Client key derivation.

Hashes the requester IP and User-Agent into an opaque identifier so that
rate-limit and request-event rows never hold raw network identity. The key
is stored on request.state.client_key by ClientKeyMiddleware for downstream
use (throttling, API event logging, audit records).
"""

from __future__ import annotations

import hashlib

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

CLIENT_KEY_LENGTH = 40
UNKNOWN = "unknown"


def get_client_ip(request: Request) -> str:
    """Resolve the requester IP from proxy headers.

    Uses the first X-Forwarded-For entry, then X-Real-IP, then a sentinel.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.headers.get("x-real-ip") or UNKNOWN


def derive_client_key(ip: str, user_agent: str) -> str:
    """Compute the truncated SHA-256 of ``ip|user_agent``."""
    raw = f"{ip}|{user_agent}"
    return hashlib.sha256(raw.encode()).hexdigest()[:CLIENT_KEY_LENGTH]


def get_client_key(request: Request) -> str:
    cached = getattr(request.state, "client_key", None)
    if cached:
        return cached
    user_agent = request.headers.get("user-agent") or UNKNOWN
    return derive_client_key(get_client_ip(request), user_agent)


class ClientKeyMiddleware(BaseHTTPMiddleware):
    """Add the derived client key to request.state."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request.state.client_key = get_client_key(request)
        return await call_next(request)
