"""
Async aggregation service for live election results.

Consumes vote-state changes from RabbitMQ, applies them incrementally to
PostgreSQL election results, and publishes every new result on Redis.
"""
import logging
import signal
import sys
import json
import time
import asyncio
from typing import Optional, Tuple, Dict, Any
from prometheus_client import start_http_server
from aio_pika.abc import AbstractIncomingMessage

from ..shared.models import VoteState
from .config import config
from .database import Database, ResultStore, CandidateRegistry
from .engine import AggregationEngine
from .metrics import changes_consumed_total, aggregation_errors, change_processing_duration
from .rabbitmq_client import RabbitMQClient
from .redis_client import ResultNotifier

logger = logging.getLogger(__name__)


def parse_change_message(body: bytes) -> Tuple[Optional[int], Optional[VoteState], Optional[VoteState]]:
    """
    Decode a vote-state change message.

    Message format::

        {"change_id": 42, "user_id": "u1", "before": {...} | null,
         "after": {...} | null, "occurred_at": "..."}

    Returns:
        Tuple of (change_id, before_image, after_image)

    Raises:
        ValueError: If the body is not valid JSON or carries no image at all
    """
    data: Dict[str, Any] = json.loads(body.decode())
    if not isinstance(data, dict):
        raise ValueError("Change message must be a JSON object")

    user_id = data.get('user_id')
    before_data = data.get('before')
    after_data = data.get('after')
    if before_data is None and after_data is None:
        raise ValueError("Change message carries neither a before nor an after image")
    if not user_id:
        raise ValueError("Change message has no user_id")

    def _image(image):
        if image is None:
            return None
        if not isinstance(image, dict):
            raise ValueError("Vote-state image must be a JSON object")
        image.setdefault('user_id', user_id)
        return VoteState.from_dict(image)

    change_id = data.get('change_id')
    return (
        int(change_id) if change_id is not None else None,
        _image(before_data),
        _image(after_data),
    )


class VoteAggregator:
    """Async vote aggregation service."""

    def __init__(self):
        """Initialize the aggregator."""
        self.database = Database()
        self.notifier = ResultNotifier()
        self.engine = AggregationEngine(
            result_store=ResultStore(self.database),
            roster=CandidateRegistry(self.database),
            notifier=self.notifier
        )
        self.rabbitmq = RabbitMQClient()
        self.consumer_task: Optional[asyncio.Task] = None

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        if self.consumer_task:
            self.consumer_task.cancel()

    async def start(self):
        """Start the aggregation service."""
        logger.info(f"Starting Prometheus metrics server on port {config.PROMETHEUS_PORT}")
        start_http_server(config.PROMETHEUS_PORT)

        await self.database.initialize()
        await self.notifier.connect()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        logger.info("Starting RabbitMQ consumer...")
        self.consumer_task = asyncio.create_task(
            self.rabbitmq.consume(callback=self._on_message, auto_ack=False)
        )
        try:
            await self.consumer_task
        except asyncio.CancelledError:
            logger.info("Consumer cancelled")

    async def _on_message(self, message: AbstractIncomingMessage):
        """
        Callback for RabbitMQ messages.

        Malformed messages are rejected without requeue. Per-election failures
        are logged by the engine and the message is still acknowledged.
        """
        start_time = time.time()
        try:
            change_id, before, after = parse_change_message(message.body)
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Rejecting malformed change message: {e}")
            aggregation_errors.labels(error_type='malformed').inc()
            changes_consumed_total.labels(status='rejected').inc()
            await message.reject(requeue=False)
            return

        report = await self.engine.handle_change(before, after, change_id=change_id)

        status = 'partial' if report.failed else 'processed'
        changes_consumed_total.labels(status=status).inc()
        change_processing_duration.observe(time.time() - start_time)

        if report.failed:
            logger.warning(
                f"Change {change_id} left {len(report.failed)} election(s) stale: {report.failed}"
            )

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down aggregator...")
        await self.rabbitmq.close()
        await self.notifier.close()
        await self.database.close()
        logger.info("Aggregator shutdown complete")


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger.info("=" * 60)
    logger.info("Starting Vote Aggregation Service")
    logger.info(f"RabbitMQ: {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}")
    logger.info(f"Queue: {config.RABBITMQ_QUEUE}")
    logger.info(f"PostgreSQL: {config.POSTGRES_HOST}:{config.POSTGRES_PORT}/{config.POSTGRES_DB}")
    logger.info(f"Redis: {config.REDIS_HOST}:{config.REDIS_PORT}")
    logger.info(f"Max retry attempts: {config.MAX_RETRY_ATTEMPTS}")
    logger.info("=" * 60)

    aggregator = VoteAggregator()

    try:
        await aggregator.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await aggregator.shutdown()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
