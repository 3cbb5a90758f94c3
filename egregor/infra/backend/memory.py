"""In-memory data backend for development and testing."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from egregor.core.errors import BackendError
from egregor.core.realtime.schemas import RUN_STATE
from egregor.infra.broadcast.base import Broadcast
from egregor.infra.broadcast.memory import InMemoryBroadcaster

from .base import (
    DataBackend,
    Row,
    TABLE_KEYS,
    apply_defaults,
    key_of,
    utcnow,
)

logger = logging.getLogger(__name__)


class _Tables:
    """Storage shared by every per-user view of one in-memory backend."""

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[tuple, Row]] = {t: {} for t in TABLE_KEYS}
        self.lock = asyncio.Lock()


def _sort_key(value: Any) -> tuple:
    # None sorts first, like NULLS FIRST in ascending order
    return (value is not None, value)


class InMemoryBackend(DataBackend):
    """Dict-backed tables with the same change-feed semantics as the SQL backend.

    ``clock`` is the server time source; tests pass a fake to travel in time.
    """

    def __init__(
        self,
        broadcast: Broadcast | None = None,
        *,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        _tables: _Tables | None = None,
    ) -> None:
        super().__init__(broadcast or InMemoryBroadcaster(), user_id)
        self.clock = clock
        self._tables = _tables or _Tables()

    def for_user(self, user_id: Optional[str]) -> "InMemoryBackend":
        return InMemoryBackend(
            self.broadcast, user_id=user_id, clock=self.clock, _tables=self._tables
        )

    def _table(self, table: str) -> Dict[tuple, Row]:
        try:
            return self._tables.rows[table]
        except KeyError:
            raise BackendError(f"Unknown table: {table}") from None

    async def server_now(self) -> datetime:
        return self.clock()

    async def select(
        self,
        table: str,
        *,
        eq: Optional[Mapping[str, Any]] = None,
        in_: Optional[Mapping[str, Sequence[Any]]] = None,
        lt: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        rows = list(self._table(table).values())
        for col, val in (eq or {}).items():
            rows = [r for r in rows if r.get(col) == val]
        for col, vals in (in_ or {}).items():
            allowed = set(vals)
            rows = [r for r in rows if r.get(col) in allowed]
        for col, val in (lt or {}).items():
            rows = [r for r in rows if r.get(col) is not None and r[col] < val]
        if order_by:
            rows.sort(key=lambda r: _sort_key(r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        async with self._tables.lock:
            stored = apply_defaults(table, row, self.clock())
            key = key_of(table, stored)
            rows = self._table(table)
            if key in rows:
                raise BackendError(f"Duplicate key {key} for table {table}")
            rows[key] = stored
            out = copy.deepcopy(stored)
        await self._publish(table, "insert", None, out)
        return out

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        update_columns: Optional[Iterable[str]] = None,
    ) -> Row:
        async with self._tables.lock:
            now = self.clock()
            rows = self._table(table)
            key = key_of(table, row)
            existing = rows.get(key)
            if existing is None:
                stored = apply_defaults(table, row, now)
                rows[key] = stored
                kind, before = "insert", None
            else:
                cols = list(row) if update_columns is None else list(update_columns)
                if not cols:
                    return copy.deepcopy(existing)
                before = copy.deepcopy(existing)
                stored = dict(existing)
                for col in cols:
                    stored[col] = row.get(col)
                if table == RUN_STATE:
                    stored["updated_at"] = now
                rows[key] = stored
                kind = "update"
            out = copy.deepcopy(stored)
        await self._publish(table, kind, before, out)
        return out

    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Row]:
        async with self._tables.lock:
            rows = self._table(table)
            doomed = [
                k for k, r in rows.items() if all(r.get(c) == v for c, v in eq.items())
            ]
            removed = [rows.pop(k) for k in doomed]
        for r in removed:
            await self._publish(table, "delete", r, None)
        return removed
