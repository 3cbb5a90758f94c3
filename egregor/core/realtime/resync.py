"""
Change feed plus periodic snapshot: the resynchronizing subscription.

Real-time delivery can silently drop (backgrounding, reconnect races, a slow
subscriber), so every live stream in the room is paired with a full re-fetch
on a fixed interval. Correctness then degrades to "eventually consistent
within one resync interval" rather than "permanently wrong".
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Generic, List, Optional, TypeVar

import structlog

from egregor.core.obs.metrics import FEED_RECONNECTS, REALTIME_EVENTS, RESYNC_TOTAL
from egregor.core.settings import settings

logger = structlog.get_logger(__name__)

S = TypeVar("S")
E = TypeVar("E")


class ResyncingSubscription(Generic[S, E]):
    """
    Subscribe to ``feed`` first, then ``fetch`` a snapshot, then re-fetch
    every ``interval_sec``. Feed items go to ``on_change``, snapshots to
    ``on_snapshot`` together with the reason they were fetched.

    Feed errors are logged and the feed is re-opened after a backoff,
    followed by an immediate resync to cover the gap. Fetch errors are logged
    and the next interval tries again. After ``stop()`` neither callback runs.
    """

    def __init__(
        self,
        name: str,
        *,
        fetch: Callable[[], Awaitable[S]],
        on_snapshot: Callable[[S, str], None],
        feed: Callable[[], AsyncIterator[E]],
        on_change: Callable[[E], None],
        interval_sec: float,
        reconnect_sec: Optional[float] = None,
    ) -> None:
        self.name = name
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._feed = feed
        self._on_change = on_change
        self.interval_sec = interval_sec
        self.reconnect_sec = (
            settings.FEED_RECONNECT_SEC if reconnect_sec is None else reconnect_sec
        )
        self._tasks: List[asyncio.Task] = []
        self._stopped = True

    @property
    def active(self) -> bool:
        return not self._stopped

    async def start(self, *, require_initial: bool = False) -> None:
        """
        Open the feed and load the first snapshot.

        With ``require_initial`` a failing first fetch is raised (and the
        subscription stopped) instead of being left to the interval.
        """
        if not self._stopped:
            return
        self._stopped = False
        self._tasks = [
            asyncio.create_task(self._run_feed(), name=f"{self.name}:feed"),
            asyncio.create_task(self._run_interval(), name=f"{self.name}:resync"),
        ]
        # Let the feed register before the snapshot so nothing falls between them
        await asyncio.sleep(0)
        ok = await self.resync("initial", raise_errors=require_initial)
        if require_initial and not ok:
            self.stop()

    async def resync(self, reason: str = "manual", *, raise_errors: bool = False) -> bool:
        if self._stopped:
            return False
        logger.debug("resync_attempt", stream=self.name, reason=reason)
        try:
            snapshot = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            RESYNC_TOTAL.labels(stream=self.name, reason=reason, outcome="error").inc()
            logger.warning("resync_error", stream=self.name, reason=reason, error=str(e))
            if raise_errors:
                self.stop()
                raise
            return False
        if self._stopped:
            return False
        self._on_snapshot(snapshot, reason)
        RESYNC_TOTAL.labels(stream=self.name, reason=reason, outcome="ok").inc()
        logger.debug("resync_success", stream=self.name, reason=reason)
        return True

    async def _run_interval(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval_sec)
            await self.resync("interval")

    async def _run_feed(self) -> None:
        while not self._stopped:
            try:
                async for item in self._feed():
                    if self._stopped:
                        return
                    REALTIME_EVENTS.labels(
                        stream=self.name, type=getattr(item, "type", "change")
                    ).inc()
                    self._on_change(item)
                logger.info("channel_closed", stream=self.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("channel_error", stream=self.name, error=str(e))
            if self._stopped:
                return
            await asyncio.sleep(self.reconnect_sec)
            FEED_RECONNECTS.labels(stream=self.name).inc()
            logger.info("channel_reconnect", stream=self.name)
            task = asyncio.create_task(self.resync("reconnect"))
            self._tasks.append(task)
            task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    def stop(self) -> None:
        """Cancel feed and timer; synchronous so teardown can rely on it."""
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        self.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
