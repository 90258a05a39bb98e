"""
aio-pika consumer for the vote-state change queue.

Changes are bound from the topic exchange into one durable queue. Messages
the aggregator rejects (or that fail twice) are dead-lettered to a side
queue for inspection.
"""
import logging
import asyncio
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika import connect_robust
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

from .config import config

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AbstractIncomingMessage], Awaitable[None]]


class RabbitMQClient:
    """Consumes vote-state changes with manual acknowledgement."""

    def __init__(self, queue_name: str = None, dead_letter_queue: str = None):
        self.queue_name = queue_name or config.RABBITMQ_QUEUE
        self.dead_letter_queue = dead_letter_queue or config.RABBITMQ_DEAD_LETTER_QUEUE
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.queue: Optional[AbstractQueue] = None

    async def connect(self):
        """
        Open a robust connection and declare the exchange, queues and binding.

        Raises:
            aio_pika.exceptions.AMQPError, ConnectionError: If the broker is unreachable
        """
        self.connection = await connect_robust(
            config.rabbitmq_url,
            client_properties={'connection_name': f'aggregator-{self.queue_name}'}
        )
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=config.RABBITMQ_PREFETCH_COUNT)

        exchange = await self.channel.declare_exchange(
            config.RABBITMQ_EXCHANGE,
            aio_pika.ExchangeType.TOPIC,
            durable=True
        )

        # Rejected messages are routed through the default exchange by queue name
        await self.channel.declare_queue(self.dead_letter_queue, durable=True)
        self.queue = await self.channel.declare_queue(
            self.queue_name,
            durable=True,
            arguments={
                'x-dead-letter-exchange': '',
                'x-dead-letter-routing-key': self.dead_letter_queue,
            }
        )
        await self.queue.bind(exchange, routing_key=config.RABBITMQ_ROUTING_KEY)

        logger.info(
            f"Connected to RabbitMQ {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}: "
            f"{config.RABBITMQ_EXCHANGE} -[{config.RABBITMQ_ROUTING_KEY}]-> {self.queue_name} "
            f"(prefetch {config.RABBITMQ_PREFETCH_COUNT}, dead letters to {self.dead_letter_queue})"
        )

    async def consume(self, callback: MessageHandler, auto_ack: bool = False):
        """
        Feed every message to ``callback`` until cancelled.

        A message the callback neither acked nor rejected is acked after it
        returns. If the callback raises, the message is requeued once, and
        dead-lettered when it fails again on redelivery.
        """
        if self.queue is None:
            await self.connect()

        logger.info(f"Consuming vote-state changes from {self.queue_name}")
        try:
            async with self.queue.iterator() as queue_iter:
                async for message in queue_iter:
                    await self._dispatch(message, callback, auto_ack)
        except asyncio.CancelledError:
            logger.info("Consumer cancelled, shutting down gracefully")
            raise

    async def _dispatch(self, message: AbstractIncomingMessage, callback: MessageHandler, auto_ack: bool):
        try:
            await callback(message)
        except Exception as e:
            logger.error(
                f"Error processing message {message.message_id} "
                f"(redelivered={message.redelivered}): {e}",
                exc_info=True
            )
            if not message.processed:
                await message.nack(requeue=not message.redelivered)
            return

        if not auto_ack and not message.processed:
            await message.ack()

    async def close(self):
        """Close the channel and connection."""
        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
                logger.info("RabbitMQ connection closed")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ connection: {e}")
