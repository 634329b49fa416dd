"""Shared Redis pool for the deletion queue.

Request handlers get a client per request; the expiry consumer and startup
recovery hold their own client on the same pool.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from cardmarket.config import settings

# The consumer can sit idle for a while between due entries
redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url, health_check_interval=30)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    async with pooled_redis() as client:
        yield client


@asynccontextmanager
async def pooled_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()
