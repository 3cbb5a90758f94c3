"""In-memory broadcaster implementation for development and testing."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

from egregor.core.obs.metrics import BROADCAST_DROPS

from .base import Broadcast

logger = logging.getLogger(__name__)


class InMemoryBroadcaster(Broadcast):
    """Simple per-process broadcaster: good for dev and unit tests."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._channels: Dict[str, List[asyncio.Queue[str]]] = {}
        self._queue_size = queue_size
        self._closed = False

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, []))

    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to all subscribers of a channel."""
        if self._closed:
            return
        for q in list(self._channels.get(channel, [])):
            try:
                q.put_nowait(message)
            except asyncio.QueueFull:
                # Subscriber fell behind; it heals on its next snapshot resync
                BROADCAST_DROPS.labels(channel=channel).inc()
                logger.warning("Dropped change event for channel %s: queue full", channel)

    @asynccontextmanager
    async def _subscription(self, channel: str) -> AsyncIterator[asyncio.Queue[str]]:
        """Context manager for subscription lifecycle."""
        q: asyncio.Queue[str] = asyncio.Queue(maxsize=self._queue_size)
        self._channels.setdefault(channel, []).append(q)
        try:
            yield q
        finally:
            subs = self._channels.get(channel, [])
            if q in subs:
                subs.remove(q)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Subscribe to a channel and yield messages until closed or cancelled."""
        async with self._subscription(channel) as q:
            while not self._closed:
                yield await q.get()

    async def close(self) -> None:
        """Close the broadcaster and cleanup."""
        self._closed = True
        self._channels.clear()
