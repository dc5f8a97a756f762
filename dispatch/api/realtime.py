"""
Live delivery tracking over WebSockets.

``ConnectionRegistry`` is an explicit object held on ``app.state``; it only
knows this process' sockets.  Events reach it either from Redis pub/sub
(``relay_pubsub``, so every instance forwards events published by any
instance) or, without Redis, straight from ``LocalPublisher``.

WS /ws/deliveries/{delivery_id} -- status and location events of a delivery
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from dispatch.infrastructure.messaging import Publisher, delivery_topic, encode_message

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionRegistry:
    def __init__(self) -> None:
        self._sockets: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, topic: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets[topic].add(websocket)

    def disconnect(self, topic: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(topic)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[topic]

    def count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._sockets.get(topic, ()))
        return sum(len(s) for s in self._sockets.values())

    async def broadcast(self, topic: str, message: str) -> int:
        """Send to every socket on *topic*; dead sockets are dropped."""
        delivered = 0
        for websocket in list(self._sockets.get(topic, ())):
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception:
                logger.debug("Dropping dead socket on %s", topic)
                self.disconnect(topic, websocket)
        return delivered


class LocalPublisher(Publisher):
    """Single-instance publisher used when Redis is not available."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        await self.registry.broadcast(topic, encode_message(event, payload))


async def relay_pubsub(
    client: aioredis.Redis, registry: ConnectionRegistry, stop: asyncio.Event
) -> None:
    """Forward ``delivery:*`` messages from Redis to local sockets."""
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    await pubsub.psubscribe("delivery:*")
    logger.info("Realtime relay subscribed to delivery:*")
    try:
        while not stop.is_set():
            try:
                message = await pubsub.get_message(timeout=1.0)
            except (RedisConnectionError, RedisTimeoutError):
                logger.warning("Realtime relay lost Redis; retrying")
                await asyncio.sleep(1.0)
                continue
            if message is None:
                continue
            await registry.broadcast(message["channel"], message["data"])
    finally:
        await pubsub.aclose()


@router.websocket("/ws/deliveries/{delivery_id}")
async def delivery_updates(websocket: WebSocket, delivery_id: str):
    registry: ConnectionRegistry = websocket.app.state.registry
    topic = delivery_topic(delivery_id)
    await registry.connect(topic, websocket)
    try:
        while True:
            await websocket.receive_text()  # keep-alive pings from the client
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(topic, websocket)
