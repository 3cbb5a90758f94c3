"""
Event room chat: deterministic ordering, id-based dedupe, snapshot
reconciliation, load-earlier paging and the unread counter.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Set, Tuple

import structlog
from pydantic import ValidationError

from egregor.core.errors import ChatValidationError, NotAuthenticatedError
from egregor.core.obs.metrics import CHAT_DEDUPE_HITS, CHAT_REORDER_CORRECTIONS
from egregor.core.realtime.schemas import MESSAGES, ChangeEvent, ChatMessage
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend

logger = structlog.get_logger(__name__)

ENERGY_GIFT_VALUES: Tuple[int, ...] = (1, 3, 7)


def _order_key(msg: ChatMessage) -> tuple:
    return (msg.created_at, msg.id)


def sort_messages(rows: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Ascending by ``created_at``; ties broken by id so every client agrees."""
    return sorted(rows, key=_order_key)


def upsert_message(rows: Sequence[ChatMessage], msg: ChatMessage) -> List[ChatMessage]:
    out = [m for m in rows if m.id != msg.id]
    out.append(msg)
    return sort_messages(out)


def remove_message(rows: Sequence[ChatMessage], message_id: str) -> List[ChatMessage]:
    if not message_id:
        return list(rows)
    return [m for m in rows if m.id != message_id]


def _trim(rows: List[ChatMessage], max_rows: int) -> List[ChatMessage]:
    return rows if len(rows) <= max_rows else rows[len(rows) - max_rows:]


def merge_and_trim(
    current: Sequence[ChatMessage],
    incoming: Iterable[ChatMessage],
    max_rows: Optional[int] = None,
) -> List[ChatMessage]:
    """Upsert each incoming row, keeping only the newest ``max_rows``."""
    merged = {m.id: m for m in current}
    for row in incoming:
        merged[row.id] = row
    return _trim(sort_messages(merged.values()), max_rows or settings.CHAT_MAX_ROWS)


def prepend_history(
    current: Sequence[ChatMessage],
    older: Iterable[ChatMessage],
    max_rows: Optional[int] = None,
) -> List[ChatMessage]:
    return merge_and_trim(current, older, max_rows)


def reconcile_snapshot(
    current: Sequence[ChatMessage],
    snapshot: Iterable[ChatMessage],
    snapshot_size: Optional[int] = None,
) -> List[ChatMessage]:
    """
    Merge a "most recent N" snapshot into what is loaded.

    The snapshot is authoritative for its own time range. Loaded rows older
    than it (paged-in history) and local rows newer than it (arrived since
    the fetch) are kept, as are optimistic rows still awaiting their echo.
    """
    size = snapshot_size or settings.CHAT_RECENT_SNAPSHOT_SIZE
    snap = sort_messages(snapshot)[-size:]
    pending = [m for m in current if m.pending]
    if not snap:
        return sort_messages(pending)

    snap_ids = {m.id for m in snap}
    oldest = snap[0].created_at
    newest = max(m.created_at for m in snap)
    older_history = [m for m in current if m.created_at < oldest and m.id not in snap_ids]
    recent_local = [
        m
        for m in current
        if m.id not in snap_ids and (m.created_at > newest or m.pending)
    ]
    merged = {m.id: m for m in older_history + snap + recent_local}
    return _trim(sort_messages(merged.values()), settings.CHAT_MAX_ROWS)


def validate_body(text: str) -> Optional[str]:
    """Trimmed body, or None when there is nothing to send."""
    body = (text or "").strip()
    if not body:
        return None
    if len(body) > settings.CHAT_MAX_CHARS:
        raise ChatValidationError(
            f"Message exceeds {settings.CHAT_MAX_CHARS} characters"
        )
    return body


def energy_gift_body(amount: int) -> str:
    return f"Sent {amount} energy to this circle."


@dataclass(frozen=True)
class SendErrorNotice:
    title: str
    body: str


def map_chat_send_error(message: str) -> SendErrorNotice:
    """Turn a backend send error into something a person can act on."""
    m = (message or "").lower()
    if "too many messages" in m:
        return SendErrorNotice(
            "Slow down",
            "You are sending messages too quickly. Please wait a few seconds and try again.",
        )
    if "cannot be empty" in m:
        return SendErrorNotice("Empty message", "Type a message before sending.")
    if f"exceeds {settings.CHAT_MAX_CHARS} characters" in m:
        return SendErrorNotice(
            "Message too long", f"Keep messages under {settings.CHAT_MAX_CHARS} characters."
        )
    return SendErrorNotice("Send failed", message or "Unknown error")


class ChatTimeline:
    """
    One viewer's ordered, de-duplicated message list.

    ``near_bottom`` follows the scroll position; messages from others that
    arrive while the viewer is scrolled up raise ``pending_count`` and pin
    ``unread_marker_id`` to the oldest of them.
    """

    def __init__(self, event_id: str, user_id: Optional[str] = None) -> None:
        self.event_id = event_id
        self.user_id = user_id
        self.messages: List[ChatMessage] = []
        self.pending_count = 0
        self.unread_marker_id: Optional[str] = None
        self.near_bottom = True
        self.has_earlier = False

    @property
    def ids(self) -> Set[str]:
        return {m.id for m in self.messages}

    @property
    def oldest_created_at(self) -> Optional[datetime]:
        return self.messages[0].created_at if self.messages else None

    def _clear_unread(self) -> None:
        self.pending_count = 0
        self.unread_marker_id = None

    def _is_mine(self, msg: ChatMessage) -> bool:
        return bool(self.user_id) and msg.user_id == self.user_id

    def on_scroll(self, distance_from_bottom: float) -> None:
        self.near_bottom = distance_from_bottom <= settings.CHAT_BOTTOM_THRESHOLD_PX
        if self.near_bottom:
            self._clear_unread()

    def jump_to_latest(self) -> None:
        self.near_bottom = True
        self._clear_unread()

    def apply_change(self, change: ChangeEvent) -> None:
        if change.type == "delete":
            target = str((change.before or {}).get("id") or "")
            if not target:
                return
            self.messages = remove_message(self.messages, target)
            self.pending_count = max(0, self.pending_count - 1)
            if self.unread_marker_id == target:
                self.unread_marker_id = None
            return

        if change.after is None:
            return
        try:
            msg = ChatMessage.model_validate(change.after)
        except ValidationError as e:
            logger.warning("chat_malformed_row", event_id=self.event_id, error=str(e))
            return
        if msg.event_id != self.event_id:
            return

        inserted_new = msg.id not in self.ids
        self.messages = merge_and_trim(self.messages, [msg])
        if inserted_new:
            idx = next((i for i, m in enumerate(self.messages) if m.id == msg.id), -1)
            tail = len(self.messages) - 1
            if 0 <= idx < tail:
                CHAT_REORDER_CORRECTIONS.inc()
                logger.info(
                    "chat_reorder_correction",
                    event_id=self.event_id,
                    inserted_idx=idx,
                    expected_tail_idx=tail,
                    created_at=msg.created_at.isoformat(),
                )
        else:
            CHAT_DEDUPE_HITS.inc()
            logger.debug("chat_dedupe_hit", event_id=self.event_id, id=msg.id)

        if change.type != "insert":
            return
        if self.near_bottom:
            self._clear_unread()
        elif inserted_new and not self._is_mine(msg):
            if self.pending_count == 0:
                self.unread_marker_id = msg.id
            self.pending_count += 1

    def apply_snapshot(self, rows: Sequence[ChatMessage], reason: str = "interval") -> None:
        known = self.ids
        missed = sort_messages(
            m for m in rows if m.id not in known and not self._is_mine(m)
        )
        self.messages = reconcile_snapshot(self.messages, rows)
        if reason in ("initial", "manual"):
            self.has_earlier = len(rows) >= settings.CHAT_RECENT_SNAPSHOT_SIZE
        if self.near_bottom:
            self._clear_unread()
        elif missed:
            self.pending_count += len(missed)
            if self.unread_marker_id is None:
                self.unread_marker_id = missed[0].id

    def prepend(self, older: Sequence[ChatMessage], has_more: bool) -> None:
        self.has_earlier = has_more
        if not older:
            return
        # Paging back means the viewer is reading history
        self.near_bottom = False
        self.messages = prepend_history(self.messages, older)

    def add_optimistic(
        self, body: str, created_at: datetime, client_id: Optional[str] = None
    ) -> ChatMessage:
        """Show an own message right away; its echo replaces it by id."""
        cid = client_id or uuid.uuid4().hex
        msg = ChatMessage(
            id=cid,
            event_id=self.event_id,
            user_id=self.user_id or "",
            body=body,
            created_at=created_at,
            client_id=cid,
            pending=True,
        )
        self.messages = merge_and_trim(self.messages, [msg])
        self.jump_to_latest()
        return msg

    def confirm(self, msg: ChatMessage) -> None:
        self.messages = merge_and_trim(self.messages, [msg.model_copy(update={"pending": False})])

    def discard(self, message_id: str) -> None:
        self.messages = remove_message(self.messages, message_id)

    @property
    def optimistic_count(self) -> int:
        return sum(1 for m in self.messages if m.pending)


class ChatRepo:
    """Message reads and writes against the data backend."""

    def __init__(self, backend: DataBackend) -> None:
        self.backend = backend

    async def list_recent(
        self, event_id: str, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        rows = await self.backend.select(
            MESSAGES,
            eq={"event_id": event_id},
            order_by="created_at",
            descending=True,
            limit=limit or settings.CHAT_RECENT_SNAPSHOT_SIZE,
        )
        return sort_messages(ChatMessage.model_validate(r) for r in rows)

    async def list_earlier(
        self, event_id: str, before: datetime, page_size: Optional[int] = None
    ) -> Tuple[List[ChatMessage], bool]:
        """One page older than ``before``, ascending, and whether more exist."""
        size = page_size or settings.CHAT_LOAD_EARLIER_PAGE_SIZE
        rows = await self.backend.select(
            MESSAGES,
            eq={"event_id": event_id},
            lt={"created_at": before},
            order_by="created_at",
            descending=True,
            limit=size + 1,
        )
        page = sort_messages(ChatMessage.model_validate(r) for r in rows[:size])
        return page, len(rows) > size

    async def send(
        self, event_id: str, text: str, *, client_id: Optional[str] = None
    ) -> Optional[ChatMessage]:
        """Insert a message as the current user; None when ``text`` is blank."""
        body = validate_body(text)
        if body is None:
            return None
        uid = await self.backend.current_user_id()
        if not uid:
            raise NotAuthenticatedError()
        row = {"event_id": event_id, "user_id": uid, "body": body}
        if client_id:
            row.update(id=client_id, client_id=client_id)
        return ChatMessage.model_validate(await self.backend.insert(MESSAGES, row))

    def subscribe(self, event_id: str) -> AsyncIterator[ChangeEvent]:
        return self.backend.subscribe(MESSAGES, eq={"event_id": event_id})
