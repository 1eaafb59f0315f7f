"""
Rate limiting.

Two layers:
- Per client IP, via slowapi, applied to every route by SlowAPIMiddleware.
- Per API key, a moving 60 second window sized by the key's
  rate_limit_per_minute, via the ``limits`` library that slowapi is built on.
  A moving window never lets a burst straddle a fixed-window boundary and
  double the budget.
"""

import logging
import math
import time
from typing import Callable, Tuple

from fastapi import Request
from limits import RateLimitItemPerMinute
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string
from slowapi import Limiter

from api.common import get_real_ip
from config import Settings

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "api_key"


def _async_storage_uri(uri: str) -> str:
    return uri if uri.startswith("async+") else f"async+{uri}"


def make_ip_key_func(settings: Settings) -> Callable[[Request], str]:
    """Client IP key function honouring X-Forwarded-For only from trusted proxies."""

    def key_func(request: Request) -> str:
        return get_real_ip(request, settings.trusted_proxies)

    return key_func


def create_ip_limiter(settings: Settings) -> Limiter:
    """Per-IP limiter applied to every route by SlowAPIMiddleware."""
    return Limiter(
        key_func=make_ip_key_func(settings),
        default_limits=[settings.rate_limit_default],
        storage_uri=settings.rate_limit_storage_url if settings.rate_limit_enabled else "memory://",
        enabled=settings.rate_limit_enabled,
    )


class KeyRateLimiter:
    """Moving window limiter keyed by API key id."""

    def __init__(self, storage_uri: str = "memory://", enabled: bool = True) -> None:
        self.enabled = enabled
        self.storage = storage_from_string(_async_storage_uri(storage_uri))
        self.strategy = MovingWindowRateLimiter(self.storage)

    async def hit(self, key_id: str, per_minute: int) -> Tuple[bool, int]:
        """
        Record one request for ``key_id``.

        Returns (allowed, retry_after_seconds). retry_after is 0 when allowed.
        """
        if not self.enabled:
            return True, 0

        item = RateLimitItemPerMinute(max(1, per_minute))
        if await self.strategy.hit(item, KEY_NAMESPACE, key_id):
            return True, 0

        stats = await self.strategy.get_window_stats(item, KEY_NAMESPACE, key_id)
        retry_after = max(1, math.ceil(stats[0] - time.time()))
        logger.info(f"API key {key_id} exceeded {per_minute}/minute, retry after {retry_after}s")
        return False, retry_after

    async def reset(self) -> None:
        await self.storage.reset()
