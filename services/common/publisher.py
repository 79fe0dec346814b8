"""
Redis Pub/Sub event publishing

Events are published after the owning transaction commits. Pub/Sub is
fire-and-forget, so a publish failure is logged and never surfaces to the
caller: the database row is the source of truth, the event is a notification.
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": event_type,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except (RedisError, OSError):
        logger.warning("Failed to publish %s on %s", event_type, channel, exc_info=True)
