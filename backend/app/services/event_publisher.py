"""
Redis Pub/Sub event publisher for real-time user notifications.
Publishes events that are consumed by the SSE endpoint in app.routes.events.
"""
import json
import os
import logging
from datetime import datetime
from typing import Optional

import redis

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 20
RECENT_EVENTS_TTL_SECONDS = 300


class EventPublisher:
    """
    Publishes notification events to Redis Pub/Sub channels.

    Channel format: notifications:{user_id}

    The last few events are also kept in a capped list so that a client
    connecting shortly after an event can still receive it.
    """

    def __init__(self, redis_url: Optional[str] = None):
        """
        Initialize the event publisher.

        Args:
            redis_url: Redis connection URL. If not provided, uses REDIS_URL env var.
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._redis: Optional[redis.Redis] = None

    @property
    def redis(self) -> redis.Redis:
        """Lazy-load Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    @staticmethod
    def channel(user_id: str) -> str:
        """Redis channel name for a user's notifications."""
        return f"notifications:{user_id}"

    @staticmethod
    def recent_key(user_id: str) -> str:
        """Redis key holding the most recent events for late subscribers."""
        return f"notifications_recent:{user_id}"

    def _publish(self, user_id: str, event_data: dict) -> bool:
        """
        Publish an event to the user's channel and remember it for late subscribers.

        Returns:
            True when Redis accepted the event, False otherwise
        """
        try:
            channel = self.channel(user_id)
            recent_key = self.recent_key(user_id)
            message = json.dumps(event_data, default=str)

            self.redis.publish(channel, message)

            pipe = self.redis.pipeline()
            pipe.lpush(recent_key, message)
            pipe.ltrim(recent_key, 0, RECENT_EVENTS_LIMIT - 1)
            pipe.expire(recent_key, RECENT_EVENTS_TTL_SECONDS)
            pipe.execute()

            logger.debug(f"Published event to {channel}: {event_data.get('type')}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event: {e}")
            return False

    def publish_notification(self, user_id: str, notification: dict) -> bool:
        """
        Publish a notification event.

        Args:
            user_id: The user ID
            notification: Serialized notification payload
        """
        return self._publish(user_id, {
            "type": "notification",
            "notification": notification,
            "timestamp": datetime.utcnow().isoformat(),
        })

    def publish_unread_count(self, user_id: str, unread: int) -> bool:
        """
        Publish the current unread counter, e.g. after mark-all-read.

        Args:
            user_id: The user ID
            unread: Number of unread notifications
        """
        return self._publish(user_id, {
            "type": "unread_count",
            "unread": unread,
            "timestamp": datetime.utcnow().isoformat(),
        })

    def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            self._redis.close()
            self._redis = None


_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """Process-wide publisher instance."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher
