"""Redis async client factory (notifications + reconciler lock)."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

from src.config import settings


def create_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Return a Redis client backed by its own connection pool."""
    pool = aioredis.ConnectionPool.from_url(url or settings.redis_url, decode_responses=True)
    return aioredis.Redis(connection_pool=pool)
