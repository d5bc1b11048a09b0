"""
Shared async Redis client.

Provides a process-wide async Redis client used for publishing visit
notifications. The URL comes from config.get_redis_url.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import get_redis_url

logger = logging.getLogger(__name__)

_shared_client: aioredis.Redis | None = None


async def get_shared_redis() -> aioredis.Redis:
    """
    Return a process-wide shared async Redis client.

    The client is lazily created on first call and reused. Connection
    health is verified via ``ping()``; a lost connection is
    automatically re-established.
    """
    global _shared_client
    if _shared_client is not None:
        try:
            await _shared_client.ping()
        except (RedisConnectionError, AttributeError, OSError):
            logger.warning("Shared Redis connection lost, reconnecting...")
            _shared_client = None
        else:
            return _shared_client

    _shared_client = aioredis.from_url(
        get_redis_url(),
        decode_responses=True,
        socket_connect_timeout=2,
    )
    await _shared_client.ping()
    logger.info("Shared Redis client connected")
    return _shared_client


async def close_shared_redis() -> None:
    """Close the shared Redis client (call during worker shutdown)."""
    global _shared_client
    if _shared_client is not None:
        await _shared_client.aclose()
        _shared_client = None
        logger.info("Shared Redis client closed")
