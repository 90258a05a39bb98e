"""
Live update streaming over WebSockets.

A subscriber first receives the current snapshot, then every message
published on the record's Redis channel, until it disconnects.
"""
import asyncio
import logging
from typing import Any, Dict

import redis.asyncio as redis
from fastapi import WebSocket

logger = logging.getLogger(__name__)


async def _forward_messages(pubsub, websocket: WebSocket):
    async for message in pubsub.listen():
        if message.get('type') == 'message':
            await websocket.send_text(message['data'])


async def _wait_for_disconnect(websocket: WebSocket):
    while True:
        message = await websocket.receive()
        if message['type'] == 'websocket.disconnect':
            return


async def stream_channel(
    websocket: WebSocket,
    redis_client: redis.Redis,
    channel: str,
    snapshot: Dict[str, Any]
):
    """
    Send ``snapshot`` then relay ``channel`` to an accepted WebSocket.

    Subscribes before sending the snapshot so no update published in between
    is lost; a client may therefore see the same state twice.
    """
    pubsub = redis_client.pubsub()
    await pubsub.subscribe(channel)
    logger.debug(f"WebSocket subscribed to {channel}")
    try:
        await websocket.send_json(snapshot)

        forward = asyncio.create_task(_forward_messages(pubsub, websocket))
        watch = asyncio.create_task(_wait_for_disconnect(websocket))
        done, pending = await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
        for task in done:
            error = task.exception()
            if error is not None:
                logger.info(f"Subscription to {channel} ended: {error}")
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.debug(f"WebSocket unsubscribed from {channel}")
