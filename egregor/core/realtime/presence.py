"""Presence tracking: heartbeat writes, active/recent partition, keyed set."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from egregor.core.obs.metrics import HEARTBEAT_FAILURES
from egregor.core.realtime.schemas import PRESENCE, ChangeEvent, PresenceRow
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend

logger = logging.getLogger(__name__)


def partition_presence(
    rows: Iterable[PresenceRow], now: datetime, window_sec: Optional[int] = None
) -> Tuple[List[PresenceRow], List[PresenceRow]]:
    """
    Split rows into (active, recent), each sorted by last seen, newest first.

    Active means ``now - last_seen_at <= window``. Rows that never reported a
    heartbeat belong to neither list.
    """
    window = timedelta(seconds=settings.ACTIVE_WINDOW_SEC if window_sec is None else window_sec)
    seen = sorted(
        (r for r in rows if r.last_seen_at is not None),
        key=lambda r: r.last_seen_at,
        reverse=True,
    )
    active = [r for r in seen if now - r.last_seen_at <= window]
    recent = [r for r in seen if now - r.last_seen_at > window]
    return active, recent


class PresenceSet:
    """In-memory presence rows for one event, keyed by (event_id, user_id)."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        self._rows: Dict[Tuple[str, str], PresenceRow] = {}

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def rows(self) -> List[PresenceRow]:
        return list(self._rows.values())

    def replace(self, rows: Iterable[PresenceRow]) -> None:
        """Adopt a full snapshot; anything absent from it is gone."""
        self._rows = {r.key: r for r in rows if r.event_id == self.event_id}

    def upsert(self, row: PresenceRow) -> None:
        if row.event_id == self.event_id:
            self._rows[row.key] = row

    def remove(self, user_id: str) -> None:
        self._rows.pop((self.event_id, user_id), None)

    def apply(self, change: ChangeEvent) -> Optional[str]:
        """Apply one change-feed event; returns the affected user id, if any."""
        if change.type == "delete":
            user_id = (change.before or {}).get("user_id")
            if user_id:
                self.remove(str(user_id))
            return user_id
        if change.after is None:
            return None
        try:
            row = PresenceRow.model_validate(change.after)
        except ValidationError as e:
            logger.warning("Ignoring malformed presence row: %s", e)
            return None
        self.upsert(row)
        return row.user_id

    def contains(self, user_id: str) -> bool:
        return (self.event_id, user_id) in self._rows

    def partition(
        self, now: datetime, window_sec: Optional[int] = None
    ) -> Tuple[List[PresenceRow], List[PresenceRow]]:
        return partition_presence(self._rows.values(), now, window_sec)

    def active_count(self, now: datetime, window_sec: Optional[int] = None) -> int:
        return len(self.partition(now, window_sec)[0])


class PresenceTracker:
    """Presence row writes and reads against the data backend."""

    def __init__(self, backend: DataBackend) -> None:
        self.backend = backend

    async def _existing(self, event_id: str, user_id: str) -> Optional[PresenceRow]:
        row = await self.backend.get_one(PRESENCE, event_id=event_id, user_id=user_id)
        return PresenceRow.model_validate(row) if row else None

    async def join(self, event_id: str, user_id: str) -> PresenceRow:
        """Upsert the row; an existing ``joined_at`` survives a rejoin."""
        now = await self.backend.server_now()
        existing = await self._existing(event_id, user_id)
        joined_at = existing.joined_at if existing and existing.joined_at else now
        row = await self.backend.upsert(
            PRESENCE,
            {
                "event_id": event_id,
                "user_id": user_id,
                "joined_at": joined_at,
                "last_seen_at": now,
            },
        )
        logger.info("Joined live", extra={"event_id": event_id, "user_id": user_id})
        return PresenceRow.model_validate(row)

    async def heartbeat(self, event_id: str, user_id: str) -> PresenceRow:
        """Refresh ``last_seen_at`` only; ``joined_at`` is set just on insert."""
        now = await self.backend.server_now()
        row = await self.backend.upsert(
            PRESENCE,
            {
                "event_id": event_id,
                "user_id": user_id,
                "joined_at": now,
                "last_seen_at": now,
            },
            update_columns=["last_seen_at"],
        )
        return PresenceRow.model_validate(row)

    async def leave(self, event_id: str, user_id: str) -> None:
        await self.backend.delete(PRESENCE, eq={"event_id": event_id, "user_id": user_id})
        logger.info("Left live", extra={"event_id": event_id, "user_id": user_id})

    async def list(self, event_id: str) -> List[PresenceRow]:
        rows = await self.backend.select(PRESENCE, eq={"event_id": event_id})
        return [PresenceRow.model_validate(r) for r in rows]

    def subscribe_changes(self, event_id: str) -> AsyncIterator[ChangeEvent]:
        return self.backend.subscribe(PRESENCE, eq={"event_id": event_id})


class HeartbeatLoop:
    """
    Periodic heartbeat for one (event, user) while ``should_beat()`` holds.

    A failed beat is logged, counted and reported through ``on_error``; the
    loop simply tries again on its next tick.
    """

    def __init__(
        self,
        tracker: PresenceTracker,
        event_id: str,
        user_id: str,
        *,
        should_beat: Callable[[], bool],
        on_error: Callable[[str], None] = lambda _msg: None,
        interval_sec: Optional[float] = None,
    ) -> None:
        self.tracker = tracker
        self.event_id = event_id
        self.user_id = user_id
        self.should_beat = should_beat
        self.on_error = on_error
        self.interval_sec = settings.HEARTBEAT_SEC if interval_sec is None else interval_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def beat(self) -> bool:
        if not self.should_beat():
            return False
        try:
            await self.tracker.heartbeat(self.event_id, self.user_id)
            return True
        except Exception as e:
            HEARTBEAT_FAILURES.inc()
            logger.warning(
                "Heartbeat failed: %s",
                e,
                extra={"event_id": self.event_id, "user_id": self.user_id},
            )
            self.on_error(str(e))
            return False

    async def _run(self) -> None:
        while True:
            await self.beat()
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"heartbeat:{self.event_id}")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
