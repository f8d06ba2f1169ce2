import json
from typing import Any, Dict, Optional
import redis.asyncio as redis
from mailsync.config import settings
from mailsync.services.stores import EventPublisher
from mailsync.utils.datetime_utils import format_utc_iso
from mailsync.utils.logging import get_logger

logger = get_logger("event_publisher")

EMAIL_RECEIVED = "email.received"


class RedisStreamEventPublisher(EventPublisher):
    """Publishes domain events onto a capped Redis Stream."""

    def __init__(self, redis_url: Optional[str] = None, stream_name: Optional[str] = None,
                 max_len: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        self.stream_name = stream_name or settings.email_events_stream
        self.max_len = max_len or settings.email_events_stream_max_len
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.redis.ping()
            logger.info(f"Event publisher connected, stream={self.stream_name}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Disconnect from Redis."""
        if self.redis:
            await self.redis.close()
            self.redis = None
            logger.info("Event publisher disconnected")

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        """
        Append an event to the stream.

        Failures are logged and swallowed: ingestion must not fail because a
        downstream consumer is unavailable.
        """
        if not self.redis:
            logger.warning(f"Dropping {topic} event: publisher not connected")
            return

        fields = {
            "topic": topic,
            "payload": json.dumps(payload, default=str),
            "published_at": format_utc_iso(),
        }
        try:
            stream_id = await self.redis.xadd(
                name=self.stream_name,
                fields=fields,
                maxlen=self.max_len,
                approximate=True
            )
            logger.debug(f"Published {topic} to {self.stream_name}: {stream_id}")
        except Exception as e:
            logger.error(f"Failed to publish {topic} event: {e}")
