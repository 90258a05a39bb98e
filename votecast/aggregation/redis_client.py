"""Redis publisher for live election result updates."""

import logging
from typing import Optional

import redis.asyncio as redis

from ..shared.models import ElectionResult, get_redis_channel
from .config import config

logger = logging.getLogger(__name__)


class ResultNotifier:
    """Publishes every written ElectionResult on its election channel."""

    def __init__(self, url: str = None):
        self.url = url or config.redis_url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Open the Redis connection and verify it."""
        try:
            self.client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.client.ping()
            logger.info("Redis connection established successfully")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def publish_result(self, result: ElectionResult) -> int:
        """
        Publish a result to ``election_results:{election_id}``.

        Returns:
            Number of subscribers that received the message
        """
        channel = get_redis_channel('election_results', result.election_id)
        receivers = await self.client.publish(channel, result.to_json())
        logger.debug(f"Published result for {result.election_id} to {receivers} subscriber(s)")
        return receivers

    async def close(self):
        """Close the Redis connection."""
        try:
            if self.client:
                await self.client.aclose()
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
