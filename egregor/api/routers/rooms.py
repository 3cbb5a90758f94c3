"""API endpoints for an event room: run state, presence, chat and live stream."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Annotated, Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from egregor.api.deps import get_backend
from egregor.core.errors import ChatValidationError, NotAuthenticatedError
from egregor.core.realtime.chat import ChatRepo
from egregor.core.realtime.presence import PresenceTracker, partition_presence
from egregor.core.realtime.run_state import RunStateStore, legal_actions
from egregor.core.realtime.schemas import (
    MESSAGES,
    PRESENCE,
    RUN_STATE,
    ChangeEvent,
    RunState,
    SendMessageRequest,
    TransitionRequest,
)
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend, as_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/events", tags=["rooms"])

Backend = Annotated[DataBackend, Depends(get_backend)]


def format_sse_event(event_type: str, payload: dict) -> str:
    """Format one SSE event with a JSON ``{type, payload}`` body."""
    return f"event: {event_type}\ndata: {json.dumps({'type': event_type, 'payload': payload}, default=str)}\n\n"


async def _require_user(backend: DataBackend) -> str:
    uid = await backend.current_user_id()
    if not uid:
        raise NotAuthenticatedError()
    return uid


def _run_state_body(state: RunState, server_now: datetime) -> Dict[str, Any]:
    return {
        "state": state.to_storage(),
        "server_now": server_now.isoformat(),
        "legal_actions": sorted(a.value for a in legal_actions(state.mode)),
    }


@router.get("/{event_id}/run-state")
async def get_run_state(event_id: str, backend: Backend):
    """Current run state, created as idle on first read."""
    state = await RunStateStore(backend).ensure(event_id)
    return _run_state_body(state, await backend.server_now())


@router.post("/{event_id}/run-state")
async def set_run_state(event_id: str, body: TransitionRequest, backend: Backend):
    """Host transition; timestamps come from the server clock."""
    state = await RunStateStore(backend).transition(
        event_id,
        body.mode,
        body.section_index,
        body.elapsed_before_pause_sec,
        body.reset_timer,
    )
    return _run_state_body(state, await backend.server_now())


@router.get("/{event_id}/presence")
async def get_presence(event_id: str, backend: Backend):
    rows = await PresenceTracker(backend).list(event_id)
    active, recent = partition_presence(rows, await backend.server_now())
    return {
        "active": [r.model_dump(mode="json") for r in active],
        "recent": [r.model_dump(mode="json") for r in recent],
        "active_count": len(active),
        "total": len(rows),
    }


@router.post("/{event_id}/presence/join")
async def presence_join(event_id: str, backend: Backend):
    uid = await _require_user(backend)
    row = await PresenceTracker(backend).join(event_id, uid)
    return {"ok": True, "presence": row.model_dump(mode="json")}


@router.post("/{event_id}/presence/heartbeat")
async def presence_heartbeat(event_id: str, backend: Backend):
    uid = await _require_user(backend)
    row = await PresenceTracker(backend).heartbeat(event_id, uid)
    return {"ok": True, "presence": row.model_dump(mode="json")}


@router.post("/{event_id}/presence/leave")
async def presence_leave(event_id: str, backend: Backend):
    uid = await _require_user(backend)
    await PresenceTracker(backend).leave(event_id, uid)
    return {"ok": True}


@router.get("/{event_id}/messages")
async def list_messages(
    event_id: str,
    backend: Backend,
    before: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
):
    """Most recent messages, or with ``before`` one page of older history."""
    repo = ChatRepo(backend)
    if before is not None:
        rows, has_more = await repo.list_earlier(event_id, as_utc(before), limit)
    else:
        size = limit or settings.CHAT_RECENT_SNAPSHOT_SIZE
        rows = await repo.list_recent(event_id, size)
        has_more = len(rows) >= size
    return {
        "messages": [m.model_dump(mode="json") for m in rows],
        "has_more": has_more,
    }


@router.post("/{event_id}/messages", status_code=201)
async def post_message(event_id: str, body: SendMessageRequest, backend: Backend):
    await _require_user(backend)
    msg = await ChatRepo(backend).send(event_id, body.body, client_id=body.client_id)
    if msg is None:
        raise ChatValidationError("Message cannot be empty")
    return msg.model_dump(mode="json")


async def _merged_changes(
    backend: DataBackend, event_id: str
) -> AsyncIterator[ChangeEvent]:
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    async def pump(table: str) -> None:
        async for evt in backend.subscribe(table, eq={"event_id": event_id}):
            await queue.put(evt)

    tasks = [asyncio.create_task(pump(t)) for t in (RUN_STATE, PRESENCE, MESSAGES)]
    try:
        while True:
            yield await queue.get()
    finally:
        for t in tasks:
            t.cancel()


@router.get("/{event_id}/stream")
async def stream_room(event_id: str, backend: Backend):
    """
    Server-Sent Events for the room's run state, presence and messages.

    Delivery is best effort; clients should keep polling the snapshot
    endpoints on an interval to heal gaps.
    """

    async def event_generator():
        yield format_sse_event("connected", {"event_id": event_id})
        try:
            async for evt in _merged_changes(backend, event_id):
                yield format_sse_event(
                    f"{evt.table}.{evt.type}", evt.model_dump(mode="json")
                )
        except asyncio.CancelledError:
            logger.debug("SSE connection cancelled", extra={"event_id": event_id})
            raise

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
