"""Abstract pub/sub interface carrying table change events between processes."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class Broadcast(abc.ABC):
    """Fan-out of serialized change events to every subscriber of a channel."""

    @abc.abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a channel."""
        ...

    @abc.abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[str]:
        """
        Subscribe to a channel and yield messages.

        Delivery is best effort: a slow or reconnecting subscriber may miss
        messages, so consumers pair this with periodic snapshot reads.
        """
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the broadcaster and cleanup resources."""
        ...


class BroadcastRegistry:
    """A simple in-process registry for broadcaster singletons."""

    _instances: Dict[str, Broadcast] = {}

    @classmethod
    def set(cls, key: str, instance: Broadcast) -> None:
        """Register a broadcaster instance, closing any one it replaces."""
        prev = cls._instances.get(key)
        if prev and prev is not instance:
            try:
                asyncio.get_running_loop().create_task(prev.close())
            except RuntimeError:
                logger.debug("No running loop; previous broadcaster %s left open", key)
        cls._instances[key] = instance

    @classmethod
    def get(cls, key: str) -> Broadcast | None:
        """Get a registered broadcaster instance."""
        return cls._instances.get(key)

    @classmethod
    def clear(cls) -> None:
        cls._instances.clear()
