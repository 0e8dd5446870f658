import redis.asyncio as aioredis

from campaign_escrow.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


def get_redis_client() -> aioredis.Redis:
    """Client for background services. Callers own it and must aclose()."""
    return aioredis.Redis(connection_pool=redis_pool)
