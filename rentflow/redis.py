"""
Shared redis.asyncio client.

Redis only holds the webhook replay keys. Callers treat its errors as
non-fatal, so the client is created lazily and never pinged at startup.
"""

import logging
from typing import Optional

from redis import asyncio as aioredis

from rentflow.config import settings

logger = logging.getLogger(__name__)

_client: Optional[aioredis.Redis] = None


def get_redis_client() -> aioredis.Redis:
    global _client
    if _client is None:
        if not settings.redis_url:
            logger.warning("REDIS_URL not set; webhook replay cache disabled")
        _client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            health_check_interval=30,
        )
        logger.info("Webhook replay cache client created")
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


async def get_redis() -> aioredis.Redis:
    """FastAPI dependency."""
    return get_redis_client()
