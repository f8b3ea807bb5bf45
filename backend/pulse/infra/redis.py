import json
import logging
from typing import Any

import redis.asyncio as redis

from pulse.settings import settings

logger = logging.getLogger(__name__)

_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis | None:
    """Shared client for realtime pub/sub; ``None`` when REDIS_URL is unset."""
    global _redis_client
    if not settings.redis_url:
        return None
    if _redis_client is None:
        timeout = settings.redis_socket_timeout_seconds
        try:
            _redis_client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        except (ValueError, redis.RedisError):
            logger.error("redis_connection_failed", exc_info=True)
            return None
    return _redis_client


async def publish_json(client: redis.Redis, channel: str, message: dict[str, Any]) -> int:
    """Publish ``message`` on ``channel``; returns the number of receiving subscribers."""
    return await client.publish(channel, json.dumps(message, default=str))


async def ping(client: redis.Redis) -> bool:
    try:
        return bool(await client.ping())
    except redis.RedisError:
        return False


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
