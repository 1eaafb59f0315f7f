"""
Helpers shared by the HTTP service, the worker and the CLI.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import AbstractSet, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp read back from the database to aware UTC.

    All timestamps are written in UTC, but SQLite returns them naive (and
    some drivers as ISO strings), so heartbeat ages and expiry checks would
    otherwise compare naive against aware values.
    """
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def get_real_ip(request: Request, trusted_proxies: AbstractSet[str] = frozenset()) -> str:
    """
    Client address for rate limiting and security logs.

    X-Forwarded-For is only believed when the connecting peer is one of
    ``trusted_proxies``; otherwise any client could pick its own address.
    """
    peer = get_remote_address(request)
    if peer not in trusted_proxies:
        return peer

    forwarded = request.headers.get("X-Forwarded-For", "")
    # Left-most entry is the original client
    client = forwarded.split(",")[0].strip()
    return client or peer


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach an X-Request-ID to every request and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 body for per-IP limits enforced by slowapi."""
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded", "error": str(exc.detail)},
        headers={"Retry-After": "60"},
    )
