"""FastAPI dependency injection providers."""

from __future__ import annotations

import logging
import os
import threading
from typing import Annotated, Optional

from fastapi import Depends, Header

from egregor.core.db import create_db_engine, init_db, make_session_factory
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend
from egregor.infra.backend.memory import InMemoryBackend
from egregor.infra.backend.sql import SqlBackend
from egregor.infra.broadcast.base import Broadcast, BroadcastRegistry
from egregor.infra.broadcast.memory import InMemoryBroadcaster
from egregor.infra.broadcast.redis import RedisBroadcaster

__all__ = ["get_broadcaster", "get_backend", "get_current_user_id"]

logger = logging.getLogger(__name__)

BROADCAST_KEY = "change_broadcast"

# Thread-safe singletons
_broadcaster_instance: Broadcast | None = None
_backend_instance: DataBackend | None = None
_lock = threading.Lock()


def _make_broadcaster() -> Broadcast:
    """
    Create and register a broadcaster instance.

    Selects Redis if REDIS_URL is set, otherwise uses in-memory.
    """
    global _broadcaster_instance

    if _broadcaster_instance is not None:
        return _broadcaster_instance

    with _lock:
        if _broadcaster_instance is not None:
            return _broadcaster_instance

        if settings.REDIS_URL:
            logger.info("Using Redis broadcaster")
            inst: Broadcast = RedisBroadcaster(settings.REDIS_URL)
        else:
            logger.info("Using in-memory broadcaster (dev mode)")
            if os.getenv("ENV") in {"production", "prod", "staging"}:
                logger.warning(
                    "Production environment detected but REDIS_URL not set! "
                    "Change events will NOT reach other server instances."
                )
            inst = InMemoryBroadcaster()

        BroadcastRegistry.set(BROADCAST_KEY, inst)
        _broadcaster_instance = inst
        return inst


def get_broadcaster() -> Broadcast:
    inst = BroadcastRegistry.get(BROADCAST_KEY)
    if inst is None:
        inst = _make_broadcaster()
    return inst


def _make_backend() -> DataBackend:
    global _backend_instance

    if _backend_instance is not None:
        return _backend_instance

    bc = get_broadcaster()
    with _lock:
        if _backend_instance is not None:
            return _backend_instance
        if settings.DATABASE_URL:
            engine = create_db_engine(settings.DATABASE_URL)
            init_db(engine)
            logger.info("Using SQL data backend (%s)", engine.url.get_backend_name())
            _backend_instance = SqlBackend(make_session_factory(engine), bc)
        else:
            logger.info("Using in-memory data backend (dev mode)")
            _backend_instance = InMemoryBackend(bc)
        return _backend_instance


def set_backend(backend: Optional[DataBackend]) -> None:
    """Install (or with None, drop) the process-wide backend; used by tests."""
    global _backend_instance, _broadcaster_instance
    with _lock:
        _backend_instance = backend
        _broadcaster_instance = backend.broadcast if backend is not None else None
    if backend is None:
        BroadcastRegistry.clear()
    else:
        BroadcastRegistry.set(BROADCAST_KEY, backend.broadcast)


def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> Optional[str]:
    """Dev identity shim: the caller's id from a header, else DEV_USER_ID."""
    return (x_user_id or "").strip() or settings.DEV_USER_ID


def get_backend(
    user_id: Annotated[Optional[str], Depends(get_current_user_id)],
) -> DataBackend:
    """The shared backend bound to the calling user."""
    return _make_backend().for_user(user_id)
