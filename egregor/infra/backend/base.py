"""Abstract data backend: row CRUD, per-table change feed, server clock, identity."""

from __future__ import annotations

import abc
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from egregor.core.errors import BackendError
from egregor.core.realtime.schemas import (
    EVENTS,
    MESSAGES,
    PRESENCE,
    RUN_STATE,
    SCRIPTS,
    ChangeEvent,
)
from egregor.core.settings import settings
from egregor.infra.broadcast.base import Broadcast

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# Primary key columns per table
TABLE_KEYS: Dict[str, tuple[str, ...]] = {
    EVENTS: ("id",),
    SCRIPTS: ("id",),
    RUN_STATE: ("event_id",),
    PRESENCE: ("event_id", "user_id"),
    MESSAGES: ("id",),
}


def utcnow() -> datetime:
    """Get current UTC timestamp"""
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def change_channel(table: str) -> str:
    """Broadcast channel carrying change events for ``table``."""
    return f"{settings.CHANGE_CHANNEL_PREFIX}{table}"


def matches(row: Optional[Mapping[str, Any]], eq: Optional[Mapping[str, Any]]) -> bool:
    """Equality filter; values are compared as strings so JSON round-trips match."""
    if not eq:
        return True
    if row is None:
        return False
    return all(str(row.get(k)) == str(v) for k, v in eq.items())


class DataBackend(abc.ABC):
    """
    Generic row store the room layer rides on.

    Every write publishes a ``ChangeEvent`` on the table's broadcast channel;
    ``subscribe`` filters that channel by column equality. Instances are bound
    to one signed-in user (``current_user_id``); ``for_user`` derives a view
    bound to another user that shares the same storage and feed.
    """

    def __init__(self, broadcast: Broadcast, user_id: Optional[str] = None) -> None:
        self.broadcast = broadcast
        self._user_id = user_id

    async def current_user_id(self) -> Optional[str]:
        return self._user_id

    @abc.abstractmethod
    def for_user(self, user_id: Optional[str]) -> "DataBackend":
        ...

    @abc.abstractmethod
    async def server_now(self) -> datetime:
        """The single timestamp authority for run-state and presence stamps."""
        ...

    @abc.abstractmethod
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
        ...

    @abc.abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        ...

    @abc.abstractmethod
    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        update_columns: Optional[Iterable[str]] = None,
    ) -> Row:
        """
        Insert ``row`` or, when its key exists, update it.

        ``update_columns`` limits which columns an existing row receives
        (``None`` means all given columns; an empty list means do nothing on
        conflict). Returns the stored row after the write.
        """
        ...

    @abc.abstractmethod
    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Row]:
        ...

    async def get_one(self, table: str, **eq: Any) -> Optional[Row]:
        rows = await self.select(table, eq=eq, limit=1)
        return rows[0] if rows else None

    async def _publish(
        self, table: str, kind: str, before: Optional[Row], after: Optional[Row]
    ) -> None:
        evt = ChangeEvent(type=kind, table=table, before=before, after=after)
        await self.broadcast.publish(change_channel(table), evt.model_dump_json())

    async def subscribe(
        self, table: str, *, eq: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[ChangeEvent]:
        """Yield change events for ``table`` whose row matches ``eq``."""
        async for msg in self.broadcast.subscribe(change_channel(table)):
            try:
                evt = ChangeEvent.model_validate(json.loads(msg))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(
                    "Malformed change event on %s: %s", table, e, extra={"table": table}
                )
                continue
            if matches(evt.row, eq):
                yield evt


def apply_defaults(table: str, row: Mapping[str, Any], now: datetime) -> Row:
    """Column defaults the store fills in on insert (ids, creation stamps)."""
    out = dict(row)
    if table == MESSAGES:
        out.setdefault("id", uuid.uuid4().hex)
        if out.get("created_at") is None:
            out["created_at"] = now
    elif table == RUN_STATE:
        out.setdefault("created_at", now)
        out["updated_at"] = now
    return out


def key_of(table: str, row: Mapping[str, Any]) -> tuple:
    try:
        return tuple(row[k] for k in TABLE_KEYS[table])
    except KeyError as e:
        raise BackendError(f"Missing key column {e} for table {table}") from e
