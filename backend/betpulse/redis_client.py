import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from betpulse.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper."""

    def __init__(self, url: str):
        self.url = url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Initialize Redis connection."""
        self.client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client initialized")

    async def disconnect(self):
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def ping(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False


redis_client = RedisClient(settings.redis_url)
