"""Redis broadcaster implementation for multi-process deployments."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import redis.asyncio as aioredis

from .base import Broadcast

logger = logging.getLogger(__name__)


class RedisBroadcaster(Broadcast):
    """Redis Pub/Sub broadcaster using redis.asyncio."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._pool: aioredis.Redis | None = None
        self._closed = False

    async def _ensure(self) -> aioredis.Redis:
        """Ensure Redis connection pool is initialized."""
        if self._pool is None:
            self._pool = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=10,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            logger.info("Redis broadcaster connected to %s", self._url)
        return self._pool

    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a Redis channel.

        Failures are logged, not raised: the write that produced the event has
        already committed and subscribers recover through their resync loop.
        """
        if self._closed:
            return
        try:
            redis = await self._ensure()
            await redis.publish(channel, message)
        except aioredis.RedisError as e:
            logger.error("Failed to publish to channel %s: %s", channel, e)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Subscribe to a Redis channel and yield messages."""
        redis = await self._ensure()
        pubsub = redis.pubsub()

        try:
            await pubsub.subscribe(channel)
            logger.debug("Subscribed to Redis channel: %s", channel)

            while not self._closed:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message and message.get("type") == "message":
                    data = message.get("data")
                    if data is not None:
                        yield str(data)
                else:
                    await asyncio.sleep(0.01)
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.close()
                logger.debug("Unsubscribed from Redis channel: %s", channel)
            except aioredis.RedisError as e:
                logger.error("Error unsubscribing from %s: %s", channel, e)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        self._closed = True
        if self._pool is not None:
            try:
                await self._pool.close()
                logger.info("Redis broadcaster closed")
            except aioredis.RedisError as e:
                logger.error("Error closing Redis connection: %s", e)
            self._pool = None
