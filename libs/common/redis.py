"""Shared async Redis client.

One client per process, created lazily from a URL (``REDIS_URL`` unless the
caller names another, e.g. ``CACHE_URL``).
"""
from typing import Optional

import redis.asyncio as aioredis

from libs.common.config import get_settings

_clients: dict[str, aioredis.Redis] = {}


async def get_redis(url: Optional[str] = None) -> aioredis.Redis:
    url = url or get_settings().REDIS_URL
    client = _clients.get(url)
    if client is None:
        client = aioredis.from_url(url, decode_responses=True)
        _clients[url] = client
    return client


async def close_redis() -> None:
    for client in list(_clients.values()):
        await client.aclose()
    _clients.clear()
