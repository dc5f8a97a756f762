"""
Outbound messaging: real-time publish and per-recipient notifications.

Topics are ``delivery:<id>``, ``driver:<id>`` and ``user:<id>``.  Messages
on the wire are JSON objects ``{"event": ..., "payload": ...}``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import NotificationModel
from .repositories import NotificationRepository

logger = logging.getLogger(__name__)


def delivery_topic(delivery_id: str) -> str:
    return f"delivery:{delivery_id}"


def driver_topic(driver_id: str) -> str:
    return f"driver:{driver_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def encode_message(event: str, payload: dict[str, Any]) -> str:
    return json.dumps({"event": event, "payload": payload}, default=str)


class Publisher(ABC):
    @abstractmethod
    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None: ...


class Notifier(ABC):
    @abstractmethod
    async def notify(
        self,
        recipient_id: str,
        type_: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None: ...


class RedisPublisher(Publisher):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        await self.redis.publish(topic, encode_message(event, payload))


class DatabaseNotifier(Notifier):
    """Records the notification row, then pushes it to the recipient's topic."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: Publisher,
    ):
        self.session_factory = session_factory
        self.publisher = publisher

    async def notify(
        self,
        recipient_id: str,
        type_: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        async with self.session_factory() as session:
            notification = await NotificationRepository(session).create(
                NotificationModel(
                    recipient_id=recipient_id,
                    type=type_,
                    title=title,
                    message=message,
                    data=data or {},
                )
            )
            await session.commit()
            notification_id = notification.id

        await self.publisher.publish(
            user_topic(recipient_id),
            "notification",
            {
                "id": notification_id,
                "type": type_,
                "title": title,
                "message": message,
                "data": data or {},
            },
        )
        logger.debug("Notified %s (%s)", recipient_id, type_)
