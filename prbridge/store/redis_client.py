import functools
from typing import Optional

import redis
import redis.asyncio as aioredis

from prbridge import settings
from prbridge.errors import TransientDependencyError
from prbridge.logger import get_logger


logger = get_logger("prbridge.redis")

_redis: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """
    Return a singleton Redis client.

    Lazily initialized and reused across the app.
    """
    global _redis

    if _redis is None:
        try:
            _redis = aioredis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
            )
        except redis.RedisError as exc:
            logger.exception("Failed to create Redis client")
            raise exc

    return _redis


def set_redis(client: Optional[aioredis.Redis]) -> None:
    """
    Replace the shared client (used by tests and on shutdown).
    """
    global _redis
    _redis = client


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def redis_op(description: str):
    """
    Log Redis failures and surface them as retryable dependency errors.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except redis.RedisError as exc:
                logger.exception("Failed to %s", description)
                raise TransientDependencyError(f"redis: failed to {description}") from exc

        return wrapper

    return decorator
