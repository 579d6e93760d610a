# cache.py
"""
Read-side cache for the public event page and buyers' ticket lists.

Purely informational: reconciliation invalidates the affected keys after it
commits, and a cache failure never fails a request.
"""
from __future__ import annotations
import json
from typing import Any, Optional

import redis.asyncio as redis
from loguru import logger

from .config import Settings


# ---- keys
def k_event(event_id: str) -> str: return f"page:event:{event_id}"
def k_tickets(user_id: str) -> str: return f"page:tickets:{user_id}"


class NullCache:
    async def get_json(self, key: str) -> Optional[Any]:
        return None

    async def set_json(self, key: str, value: Any) -> None:
        return None

    async def invalidate(self, *keys: str) -> None:
        return None


class RedisCache:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.r.get(key)
        except redis.RedisError as e:
            logger.warning("cache get {} failed: {}", key, e)
            return None
        return json.loads(raw) if raw else None

    async def set_json(self, key: str, value: Any) -> None:
        try:
            await self.r.set(key, json.dumps(value), ex=self.ttl)
        except redis.RedisError as e:
            logger.warning("cache set {} failed: {}", key, e)

    async def invalidate(self, *keys: str) -> None:
        keys = tuple(k for k in keys if k)
        if not keys:
            return
        try:
            await self.r.delete(*keys)
        except redis.RedisError as e:
            logger.warning("cache invalidate {} failed: {}", keys, e)


PageCache = NullCache | RedisCache


# Factory keeps server.py backend-agnostic:
def new_cache(settings: Settings, *, r: Optional[redis.Redis] = None):
    if settings.cache_backend == "redis":
        if r is None:
            raise RuntimeError("RedisCache requires r=redis.Redis")
        return RedisCache(r, ttl_seconds=settings.cache_ttl_seconds)
    return NullCache()
