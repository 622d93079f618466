"""Short-lived read cache for stock, cart and order views.

Entries expire after a TTL and are also evicted explicitly whenever the
underlying rows change (``invalidate_product``/``invalidate_user``/
``invalidate_order``). Cache failures are logged and behave as misses;
the database stays the source of truth.

Backend is chosen from ``CACHE_URL``:

- ``memory://`` keeps entries in this process. Fine for one API instance;
  with several instances an invalidation on one leaves stale entries on the
  others until their TTL runs out.
- ``redis://...`` shares entries (and invalidations) across instances.
"""

import json
import time
import uuid
from functools import lru_cache
from typing import Any, Callable, Optional, Protocol, Union

from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.redis import get_redis

logger = get_logger(__name__)

Key = Union[str, uuid.UUID]


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class MemoryCacheBackend:
    """Process-local backend with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)


class RedisCacheBackend:
    def __init__(self, url: str):
        self.url = url

    async def get(self, key: str) -> Optional[str]:
        client = await get_redis(self.url)
        return await client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        client = await get_redis(self.url)
        await client.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            client = await get_redis(self.url)
            await client.delete(*keys)


class ReadCache:
    def __init__(
        self,
        backend: CacheBackend,
        *,
        prefix: str = "store",
        default_ttl: int = 30,
    ):
        self.backend = backend
        self.prefix = prefix
        self.default_ttl = default_ttl

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def key(self, kind: str, identifier: Key = "") -> str:
        return f"{self.prefix}:{kind}:{identifier}"

    def stock_key(self, product_id: Key) -> str:
        return self.key("stock", product_id)

    def cart_key(self, user_id: str) -> str:
        return self.key("cart", user_id)

    def order_key(self, order_ref: str) -> str:
        return self.key("order", order_ref)

    def user_orders_key(self, user_id: str) -> str:
        return self.key("orders", user_id)

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.backend.set(
                key, json.dumps(value, default=str), ttl or self.default_ttl
            )
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)

    async def delete(self, *keys: str) -> None:
        try:
            await self.backend.delete(*keys)
        except Exception as e:
            logger.warning("Cache delete failed for %s: %s", keys, e)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_product(self, product_id: Key) -> None:
        """Evict a product's cached availability."""
        await self.delete(self.stock_key(product_id))

    async def invalidate_user(self, user_id: str) -> None:
        """Evict a user's cart view and order listing."""
        await self.delete(self.cart_key(user_id), self.user_orders_key(user_id))

    async def invalidate_order(self, *order_refs: str) -> None:
        """Evict cached order/payment views (by order id or reference id)."""
        keys = [self.order_key(ref) for ref in order_refs if ref]
        if keys:
            await self.delete(*keys)


def build_read_cache(url: str) -> ReadCache:
    settings = get_settings()
    if url.startswith("memory://"):
        backend: CacheBackend = MemoryCacheBackend()
    elif url.startswith(("redis://", "rediss://")):
        backend = RedisCacheBackend(url)
    else:
        raise ValueError(f"Unsupported CACHE_URL scheme: {url}")
    return ReadCache(
        backend,
        prefix=settings.CACHE_KEY_PREFIX,
        default_ttl=settings.STOCK_CACHE_TTL_SECONDS,
    )


@lru_cache
def get_read_cache() -> ReadCache:
    """FastAPI dependency returning the process-wide read cache."""
    return build_read_cache(get_settings().CACHE_URL)
