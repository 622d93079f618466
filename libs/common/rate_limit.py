"""Rate limiting for the commerce API.

Two layers:

- ``limiter`` (slowapi) guards ordinary routes with per-route decorators.
- ``CheckoutRateLimiter`` (``limits.aio``, moving window) is the collaborator
  the checkout flow awaits before doing any work. It answers allow/deny with
  the remaining budget and reset time instead of raising, so the caller can
  shape its own error.

Both use ``RATE_LIMIT_STORAGE_URI``: ``memory://`` for a single process,
``redis://...`` when several API instances share the budget.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Request, Response
from limits import RateLimitItem, parse
from limits.aio.storage import Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from libs.common.config import get_settings


def get_client_ip(request: Request) -> str:
    """
    Get client IP from request, handling proxies.

    Checks X-Forwarded-For header first (for proxied requests),
    then falls back to direct connection IP.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First hop is the original client
        return forwarded.split(",")[0].strip()
    return get_remote_address(request) or "unknown"


@lru_cache
def get_limiter() -> Limiter:
    """Create and return the cached slowapi Limiter."""
    settings = get_settings()
    return Limiter(
        key_func=get_client_ip,
        default_limits=[settings.DEFAULT_RATE_LIMIT],
        storage_uri=settings.RATE_LIMIT_STORAGE_URI,
        strategy="fixed-window",
    )


limiter = get_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Render slowapi rejections in the same shape as other store errors."""
    retry_after = 60
    limit = getattr(exc, "limit", None)
    if limit is not None:
        retry_after = int(limit.limit.get_expiry())

    return JSONResponse(
        status_code=429,
        content={
            "detail": "Too many requests. Please try again later.",
            "code": "RATE_LIMIT_EXCEEDED",
            "details": {"retry_after": retry_after},
        },
        headers={"Retry-After": str(retry_after)},
    )


def cart_limit(func: Callable) -> Callable:
    """Cart mutations (60/minute per client)."""
    return limiter.limit("60/minute")(func)


def payment_limit(func: Callable) -> Callable:
    """Payment callbacks (30/minute per client)."""
    return limiter.limit("30/minute")(func)


def admin_limit(func: Callable) -> Callable:
    """Admin endpoints (200/minute per client)."""
    return limiter.limit("200/minute")(func)


# ---------------------------------------------------------------------------
# Checkout limiter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int


def _async_storage_uri(uri: str) -> str:
    """Map a storage URI onto its ``limits.aio`` flavour (``async+redis://...``)."""
    return uri if uri.startswith("async+") else f"async+{uri}"


class CheckoutRateLimiter:
    """Moving-window limiter keyed by client identity."""

    namespace = "checkout"

    def __init__(self, limit: str, storage: Optional[Storage] = None):
        self.item: RateLimitItem = parse(limit)
        self.storage = storage or storage_from_string(
            _async_storage_uri(get_settings().RATE_LIMIT_STORAGE_URI)
        )
        self.strategy = MovingWindowRateLimiter(self.storage)

    async def check(self, key: str) -> RateLimitDecision:
        allowed = await self.strategy.hit(self.item, self.namespace, key)
        stats = await self.strategy.get_window_stats(self.item, self.namespace, key)
        reset_epoch = stats.reset_time
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil(reset_epoch - time.time()))
        return RateLimitDecision(
            allowed=allowed,
            limit=self.item.amount,
            remaining=stats.remaining,
            reset_at=datetime.fromtimestamp(reset_epoch, tz=timezone.utc),
            retry_after=retry_after,
        )

    async def reset(self) -> None:
        await self.storage.reset()


@lru_cache
def get_checkout_limiter() -> CheckoutRateLimiter:
    """FastAPI dependency returning the process-wide checkout limiter."""
    return CheckoutRateLimiter(get_settings().CHECKOUT_RATE_LIMIT)
