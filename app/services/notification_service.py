"""
Notification Service - lifecycle event fan-out over Redis pub/sub.

Dashboards subscribe to the channel; the lifecycle publishes after every
accepted transition and never waits for an acknowledgment.
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol

from app.config import settings
from app.redis import get_redis

logger = logging.getLogger(__name__)


class NotificationPublisher(Protocol):
    """Anything that can publish a named lifecycle event."""

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class RedisNotificationPublisher:
    """Publish lifecycle events as JSON on a Redis channel."""

    def __init__(self, channel: Optional[str] = None):
        self.channel = channel or settings.notification_channel

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        redis = await get_redis()
        message = json.dumps({"event": event_name, "payload": payload}, default=str)
        receivers = await redis.publish(self.channel, message)
        logger.debug(f"Published {event_name} to {self.channel} ({receivers} subscribers)")

