import logging

import redis.asyncio as redis

from .config import Settings
from .database import connect_with_retry

logger = logging.getLogger(__name__)


async def connect_redis(settings: Settings) -> redis.Redis:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await connect_with_retry(
            "redis", client.ping, settings.STARTUP_CONNECT_ATTEMPTS, settings.STARTUP_BACKOFF_SECONDS
        )
    except Exception:
        await client.aclose()
        raise
    logger.info("Connected to Redis.")
    return client


async def close_redis(client: redis.Redis):
    await client.aclose()
    logger.info("Redis connection closed.")
