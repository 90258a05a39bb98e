"""RabbitMQ publisher for vote-state change events."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.pool import Pool

from ..shared.exceptions import TransientStoreError
from ..shared.models import VoteStateChange
from .config import settings

logger = logging.getLogger(__name__)


class RabbitMQPublisher:
    """Async RabbitMQ publisher with connection pooling."""

    def __init__(self):
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None

    async def get_connection(self) -> aio_pika.abc.AbstractRobustConnection:
        """Get a connection from the pool."""
        return await connect_robust(settings.rabbitmq_url)

    async def get_channel(self) -> aio_pika.abc.AbstractChannel:
        """Get a channel from the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools and declare the exchange."""
        try:
            self.connection_pool = Pool(
                self.get_connection,
                max_size=settings.RABBITMQ_POOL_SIZE
            )
            self.channel_pool = Pool(
                self.get_channel,
                max_size=settings.RABBITMQ_POOL_SIZE
            )

            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    settings.RABBITMQ_EXCHANGE,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )

            logger.info("RabbitMQ publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize RabbitMQ publisher: {e}")
            raise

    async def publish_change(self, change: VoteStateChange) -> bool:
        """
        Publish a vote-state change for aggregation.

        Returns:
            bool: True if published successfully, False otherwise
        """
        if self.channel_pool is None:
            logger.error("RabbitMQ publisher is not initialized")
            return False

        try:
            async with self.channel_pool.acquire() as channel:
                exchange = await channel.get_exchange(settings.RABBITMQ_EXCHANGE)

                message = Message(
                    body=change.to_json().encode(),
                    delivery_mode=DeliveryMode.PERSISTENT,
                    content_type="application/json",
                    message_id=str(change.change_id),
                    timestamp=datetime.now(timezone.utc)
                )

                await exchange.publish(
                    message,
                    routing_key=settings.RABBITMQ_ROUTING_KEY
                )

                logger.info(
                    f"Published vote-state change: change_id={change.change_id}, "
                    f"user_id={change.user_id}"
                )
                return True

        except Exception as e:
            logger.error(f"Failed to publish change {change.change_id} to RabbitMQ: {e}")
            return False

    async def check_health(self) -> bool:
        """Check RabbitMQ connection health."""
        if self.channel_pool is None:
            return False
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.get_exchange(settings.RABBITMQ_EXCHANGE)
                return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    async def close(self):
        """Close all connections and channels."""
        try:
            if self.channel_pool:
                await self.channel_pool.close()
            if self.connection_pool:
                await self.connection_pool.close()
            logger.info("RabbitMQ publisher closed successfully")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ publisher: {e}")


class OutboxRelay:
    """
    Republishes outbox changes that the writing request failed to publish.

    A change may be delivered twice (published by the request, then by the
    relay before it was marked); aggregation drops the duplicate by change id.
    """

    def __init__(self, database, publisher: RabbitMQPublisher):
        self.database = database
        self.publisher = publisher
        self.running = False

    async def relay_once(self) -> int:
        """
        Publish one batch of pending changes.

        Returns:
            Number of changes published
        """
        changes = await self.database.fetch_unpublished_changes(
            older_than_seconds=settings.OUTBOX_GRACE_SECONDS,
            limit=settings.OUTBOX_BATCH_SIZE
        )
        published = 0
        for change in changes:
            if not await self.publisher.publish_change(change):
                logger.warning(f"Relay could not publish change {change.change_id}, will retry")
                break
            await self.database.mark_change_published(change.change_id)
            published += 1

        if published:
            logger.info(f"Relayed {published} pending vote-state change(s)")
        return published

    async def run(self):
        """Relay loop, stopped by cancellation or ``stop()``."""
        self.running = True
        while self.running:
            try:
                await self.relay_once()
            except TransientStoreError as e:
                logger.error(f"Outbox relay error: {e}")
            await asyncio.sleep(settings.OUTBOX_RELAY_INTERVAL_SECONDS)

    def stop(self):
        self.running = False


# Global publisher instance
publisher = RabbitMQPublisher()
