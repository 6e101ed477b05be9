from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, AsyncIterator

import redis
import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pointage.errors import DeliveryError
from pointage.models import Notification, NotificationPriority
from pointage.services.push_notifications import send_push_to_account
from pointage.settings import get_settings, is_push_enabled, is_stream_enabled

logger = logging.getLogger("pointage.notifications")

CHANNEL_PREFIX = "notifications"
PUSH_PRIORITIES = frozenset({NotificationPriority.HIGH, NotificationPriority.URGENT})


def channel_for(account_id: int) -> str:
    return f"{CHANNEL_PREFIX}:{account_id}"


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "priority": notification.priority.value,
        "isRead": bool(notification.is_read),
        "metadata": notification.meta or {},
        "createdAt": notification.created_at.isoformat() if notification.created_at else None,
    }


@lru_cache
def get_redis_client() -> redis.Redis | None:
    if not is_stream_enabled():
        return None
    return redis.Redis.from_url(
        str(get_settings().redis_url),
        encoding="utf-8",
        decode_responses=True,
    )


class NotificationChannel:
    name = "base"

    def send(self, notification: Notification) -> bool:
        raise NotImplementedError


class RedisChannel(NotificationChannel):
    """Publishes to the recipient's pub/sub channel; every API instance sees it."""

    name = "redis"

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client if client is not None else get_redis_client()

    def send(self, notification: Notification) -> bool:
        if self.client is None:
            return False
        try:
            receivers = self.client.publish(
                channel_for(notification.recipient_id),
                json.dumps(serialize_notification(notification)),
            )
        except redis.RedisError as exc:
            raise DeliveryError(f"publish failed: {exc}") from exc
        return int(receivers or 0) > 0


class WebPushChannel(NotificationChannel):
    name = "webpush"

    def __init__(self, db: Session) -> None:
        self.db = db

    def send(self, notification: Notification) -> bool:
        if notification.priority not in PUSH_PRIORITIES or not is_push_enabled():
            return False
        try:
            result = send_push_to_account(
                self.db,
                account_id=notification.recipient_id,
                title=notification.title,
                body=notification.message,
                data={"notification_id": notification.id, "type": notification.type.value},
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DeliveryError(f"push bookkeeping failed: {exc}") from exc
        except Exception as exc:
            raise DeliveryError(f"push failed: {exc}") from exc
        return int(result.get("sent", 0) or 0) > 0


def default_channels(db: Session) -> list[NotificationChannel]:
    return [RedisChannel(), WebPushChannel(db)]


async def stream_channel_messages(
    account_id: int,
    *,
    heartbeat_seconds: float | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one recipient until the client goes away.

    The subscription is released in ``finally`` so a dropped connection
    leaves nothing behind on the broker.
    """
    settings = get_settings()
    interval = heartbeat_seconds if heartbeat_seconds is not None else settings.stream_heartbeat_seconds
    client = aioredis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)
    pubsub = client.pubsub()
    channel = channel_for(account_id)
    await pubsub.subscribe(channel)
    logger.info("notification_stream_opened", extra={"account_id": account_id})
    try:
        yield ": connected\n\n"
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=interval)
            if message is None:
                yield ": heartbeat\n\n"
                continue
            yield f"data: {message['data']}\n\n"
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await client.aclose()
        logger.info("notification_stream_closed", extra={"account_id": account_id})
