"""SQLAlchemy data backend (SQLite for dev, PostgreSQL in production)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from egregor.core.errors import BackendError
from egregor.core.models import Event, EventMessage, EventPresence, EventRunState, ScriptRow
from egregor.core.realtime.schemas import EVENTS, MESSAGES, PRESENCE, RUN_STATE, SCRIPTS
from egregor.infra.broadcast.base import Broadcast

from .base import DataBackend, Row, apply_defaults, as_utc, key_of, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MODELS: Dict[str, Any] = {
    EVENTS: Event,
    SCRIPTS: ScriptRow,
    RUN_STATE: EventRunState,
    PRESENCE: EventPresence,
    MESSAGES: EventMessage,
}


def _to_row(obj: Any) -> Row:
    out: Row = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key)
        if isinstance(val, datetime):
            val = as_utc(val)
        out[col.key] = val
    return out


def _db_now(session: Session) -> datetime:
    if session.get_bind().dialect.name == "sqlite":
        # SQLite CURRENT_TIMESTAMP has whole-second precision; the database
        # runs in-process, so its clock is this process's clock
        return utcnow()
    return as_utc(session.execute(select(func.now())).scalar_one())


class SqlBackend(DataBackend):
    """
    Blocking SQLAlchemy sessions run on worker threads; change events are
    published only after the transaction commits.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        broadcast: Broadcast,
        *,
        user_id: Optional[str] = None,
    ) -> None:
        super().__init__(broadcast, user_id)
        self._session_factory = session_factory

    def for_user(self, user_id: Optional[str]) -> "SqlBackend":
        return SqlBackend(self._session_factory, self.broadcast, user_id=user_id)

    @staticmethod
    def _model(table: str) -> Any:
        try:
            return _MODELS[table]
        except KeyError:
            raise BackendError(f"Unknown table: {table}") from None

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session_factory() as session:
                try:
                    result = fn(session)
                    session.commit()
                    return result
                except SQLAlchemyError:
                    session.rollback()
                    raise

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            raise BackendError(str(e)) from e

    async def server_now(self) -> datetime:
        return await self._run(_db_now)

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
        model = self._model(table)
        q = select(model)
        for col, val in (eq or {}).items():
            q = q.where(getattr(model, col) == val)
        for col, vals in (in_ or {}).items():
            q = q.where(getattr(model, col).in_(list(vals)))
        for col, val in (lt or {}).items():
            q = q.where(getattr(model, col) < val)
        if order_by:
            column = getattr(model, order_by)
            q = q.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            q = q.limit(limit)

        def fetch(session: Session) -> List[Row]:
            return [_to_row(obj) for obj in session.execute(q).scalars().all()]

        return await self._run(fetch)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        model = self._model(table)

        def write(session: Session) -> Row:
            obj = model(**apply_defaults(table, row, _db_now(session)))
            session.add(obj)
            session.flush()
            return _to_row(obj)

        try:
            out = await self._run(write)
        except BackendError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise BackendError(f"Duplicate key for table {table}") from e.__cause__
            raise
        await self._publish(table, "insert", None, out)
        return out

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        update_columns: Optional[Iterable[str]] = None,
    ) -> Row:
        model = self._model(table)
        key = key_of(table, row)
        cols = list(row) if update_columns is None else list(update_columns)

        def write(session: Session) -> tuple[str, Optional[Row], Row]:
            now = _db_now(session)
            existing = session.get(model, key)
            if existing is None:
                obj = model(**apply_defaults(table, row, now))
                session.add(obj)
                try:
                    session.flush()
                    return "insert", None, _to_row(obj)
                except IntegrityError:
                    # Lost a create race; fall through to the update path
                    session.rollback()
                    existing = session.get(model, key)
                    if existing is None:
                        raise
            if not cols:
                return "noop", None, _to_row(existing)
            before = _to_row(existing)
            for col in cols:
                setattr(existing, col, row.get(col))
            if table == RUN_STATE:
                existing.updated_at = now
            session.flush()
            return "update", before, _to_row(existing)

        kind, before, out = await self._run(write)
        if kind != "noop":
            await self._publish(table, kind, before, out)
        return out

    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Row]:
        model = self._model(table)
        q = select(model)
        for col, val in eq.items():
            q = q.where(getattr(model, col) == val)

        def remove(session: Session) -> List[Row]:
            removed = []
            for obj in session.execute(q).scalars().all():
                removed.append(_to_row(obj))
                session.delete(obj)
            session.flush()
            return removed

        removed = await self._run(remove)
        for r in removed:
            await self._publish(table, "delete", r, None)
        return removed
