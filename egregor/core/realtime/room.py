"""
Per-viewer event room orchestration.

``EventRoomController`` owns everything one viewer's room screen needs: the
event row and its script, the shared run state, the presence set, the chat
timeline, and the timers that keep them fresh. It derives the countdown,
decides which host controls are offered, and drives auto-advance, join,
leave and heartbeat.

All derived values are recomputed from locally held state on a display tick;
backend calls happen only in response to viewer actions, the host's
auto-advance and the resync subscriptions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, FrozenSet, List, Optional, Set, Tuple

import structlog
from pydantic import ValidationError

from egregor.core.errors import (
    EgregorError,
    EventNotFoundError,
    InvalidTransitionError,
    NotAuthenticatedError,
    NotHostError,
    RoomLoadError,
)
from egregor.core.realtime.chat import (
    ChatRepo,
    ChatTimeline,
    SendErrorNotice,
    energy_gift_body,
    map_chat_send_error,
    validate_body,
)
from egregor.core.realtime.countdown import (
    clamp_section_index,
    format_seconds,
    parse_script,
    run_status_label,
    seconds_left,
    section_duration_sec,
    section_progress,
    total_progress,
)
from egregor.core.realtime.preferences import InMemoryPreferenceStore, PreferenceStore
from egregor.core.realtime.presence import HeartbeatLoop, PresenceSet, PresenceTracker
from egregor.core.realtime.resync import ResyncingSubscription
from egregor.core.realtime.run_state import (
    RunAction,
    RunStateStore,
    TransitionPlan,
    legal_actions,
    plan_auto_advance,
    plan_transition,
)
from egregor.core.realtime.schemas import (
    EVENTS,
    SCRIPTS,
    ChangeEvent,
    ChatMessage,
    EventInfo,
    PresenceRow,
    RunMode,
    RunState,
    Script,
)
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class RoomView:
    """Read-only snapshot of what the viewer sees right now."""

    event: Optional[EventInfo]
    script: Optional[Script]
    is_host: bool
    run_state: RunState
    run_ready: bool
    live_section_index: int
    viewed_section_index: int
    previewing: bool
    seconds_left: int
    countdown: str
    section_progress_pct: float
    total_progress_pct: float
    run_status_label: str
    available_actions: FrozenSet[RunAction]
    active: List[PresenceRow]
    recent: List[PresenceRow]
    active_count: int
    total_attendees: int
    is_joined: bool
    messages: List[ChatMessage]
    pending_message_count: int
    unread_marker_id: Optional[str]
    has_earlier_messages: bool
    run_error: str = ""
    presence_error: str = ""
    presence_message: str = ""
    chat_error: Optional[SendErrorNotice] = None


@dataclass
class _AdvanceGuard:
    """Tracks the auto-advance request for one zero-crossing."""

    key: Tuple[int, Optional[datetime]]
    in_flight: bool = True
    retry_at: Optional[datetime] = None


@dataclass
class _RoomTasks:
    tick: Optional[asyncio.Task] = None
    oneshot: Set[asyncio.Task] = field(default_factory=set)


class EventRoomController:
    """
    One viewer's live room for ``event_id``.

    ``clock`` is the local wall clock; ``now()`` corrects it by the offset to
    the backend clock sampled at every run-state resync, so countdowns run on
    the server's timeline. ``on_view`` is called with a fresh ``RoomView`` on
    every display tick.
    """

    def __init__(
        self,
        backend: DataBackend,
        event_id: str,
        *,
        preferences: Optional[PreferenceStore] = None,
        clock: Callable[[], datetime] = utcnow,
        on_view: Optional[Callable[[RoomView], None]] = None,
        tick_sec: Optional[float] = None,
        heartbeat_sec: Optional[float] = None,
        run_state_resync_sec: Optional[float] = None,
        presence_resync_sec: Optional[float] = None,
        chat_resync_sec: Optional[float] = None,
        auto_advance_retry_sec: Optional[float] = None,
    ) -> None:
        self.backend = backend
        self.event_id = event_id
        self.preferences = preferences or InMemoryPreferenceStore()
        self.clock = clock
        self.on_view = on_view
        self.tick_sec = settings.DISPLAY_TICK_SEC if tick_sec is None else tick_sec
        self.auto_advance_retry_sec = (
            settings.AUTO_ADVANCE_RETRY_SEC
            if auto_advance_retry_sec is None
            else auto_advance_retry_sec
        )

        self.runs = RunStateStore(backend)
        self.tracker = PresenceTracker(backend)
        self.chat_repo = ChatRepo(backend)

        self.user_id: Optional[str] = None
        self.event: Optional[EventInfo] = None
        self.script: Optional[Script] = None
        self.run_state = RunState()
        self.run_ready = False
        self.presence = PresenceSet(event_id)
        self.chat = ChatTimeline(event_id)

        self.is_joined = False
        self.foreground = True
        self.run_error = ""
        self.presence_error = ""
        self.presence_message = ""
        self.chat_error: Optional[SendErrorNotice] = None

        self._server_offset = timedelta(0)
        self._preview_index: Optional[int] = None
        self._advance: Optional[_AdvanceGuard] = None
        self._joining = False
        self._leaving = False
        self._loading_earlier = False
        self._open = False
        self._closed = False
        self._tasks = _RoomTasks()

        self._heartbeat = HeartbeatLoop(
            self.tracker,
            event_id,
            "",
            should_beat=self._should_beat,
            on_error=self._on_heartbeat_error,
            interval_sec=heartbeat_sec,
        )
        self._event_sub: ResyncingSubscription = ResyncingSubscription(
            "event",
            fetch=self._fetch_event,
            on_snapshot=self._apply_event_snapshot,
            feed=lambda: backend.subscribe(EVENTS, eq={"id": event_id}),
            on_change=self._apply_event_change,
            interval_sec=settings.RUN_STATE_RESYNC_SEC
            if run_state_resync_sec is None
            else run_state_resync_sec,
        )
        self._run_sub: ResyncingSubscription = ResyncingSubscription(
            "run_state",
            fetch=self._fetch_run_state,
            on_snapshot=lambda state, _reason: self._apply_run_state(state),
            feed=lambda: self.runs.subscribe(event_id),
            on_change=self._apply_run_state,
            interval_sec=settings.RUN_STATE_RESYNC_SEC
            if run_state_resync_sec is None
            else run_state_resync_sec,
        )
        self._presence_sub: ResyncingSubscription = ResyncingSubscription(
            "presence",
            fetch=lambda: self.tracker.list(event_id),
            on_snapshot=self._apply_presence_snapshot,
            feed=lambda: self.tracker.subscribe_changes(event_id),
            on_change=self._apply_presence_change,
            interval_sec=settings.PRESENCE_RESYNC_SEC
            if presence_resync_sec is None
            else presence_resync_sec,
        )
        self._chat_sub: ResyncingSubscription = ResyncingSubscription(
            "chat",
            fetch=lambda: self.chat_repo.list_recent(event_id),
            on_snapshot=self._apply_chat_snapshot,
            feed=lambda: self.chat_repo.subscribe(event_id),
            on_change=self._apply_chat_change,
            interval_sec=settings.CHAT_RESYNC_SEC
            if chat_resync_sec is None
            else chat_resync_sec,
        )

    # ---- lifecycle ----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """
        Load the room and start every subscription and timer.

        Only the initial event load is allowed to fail loudly
        (``RoomLoadError``, or ``EventNotFoundError`` for a missing event);
        everything after that degrades to stale data plus a retry.
        """
        if self._open:
            return
        self._closed = False
        self.user_id = await self.backend.current_user_id()
        self.chat.user_id = self.user_id
        self._heartbeat.user_id = self.user_id or ""

        try:
            await self._event_sub.start(require_initial=True)
        except (EventNotFoundError, RoomLoadError):
            raise
        except Exception as e:
            logger.warning("room_load_failed", event_id=self.event_id, error=str(e))
            raise RoomLoadError(f"Event load failed: {e}") from e

        self._open = True
        await self._run_sub.start()
        await self._presence_sub.start()
        await self._chat_sub.start()
        self._tasks.tick = asyncio.create_task(
            self._run_ticks(), name=f"room-tick:{self.event_id}"
        )
        logger.info("room_opened", event_id=self.event_id, user_id=self.user_id)
        await self._maybe_auto_join()
        self._sync_heartbeat()

    def close(self) -> None:
        """Stop every timer and subscription; later deliveries are ignored."""
        self._closed = True
        self._open = False
        for sub in (self._event_sub, self._run_sub, self._presence_sub, self._chat_sub):
            sub.stop()
        self._heartbeat.stop()
        if self._tasks.tick is not None:
            self._tasks.tick.cancel()
            self._tasks.tick = None
        for task in list(self._tasks.oneshot):
            task.cancel()
        self._tasks.oneshot.clear()
        logger.info("room_closed", event_id=self.event_id)

    async def __aenter__(self) -> "EventRoomController":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.oneshot.add(task)
        task.add_done_callback(self._tasks.oneshot.discard)
        return task

    async def settle(self) -> None:
        """Wait for background one-shot work (auto-advance, reloads) to finish."""
        while self._tasks.oneshot:
            await asyncio.gather(*list(self._tasks.oneshot), return_exceptions=True)

    # ---- clock --------------------------------------------------------------

    def now(self) -> datetime:
        return self.clock() + self._server_offset

    @property
    def server_offset(self) -> timedelta:
        return self._server_offset

    async def _sample_server_offset(self) -> None:
        before = self.clock()
        server = await self.backend.server_now()
        after = self.clock()
        self._server_offset = server - (before + (after - before) / 2)

    # ---- snapshots and change feeds -----------------------------------------

    async def _fetch_event(self) -> Tuple[EventInfo, Optional[Script]]:
        row = await self.backend.get_one(EVENTS, id=self.event_id)
        if row is None:
            raise EventNotFoundError(self.event_id)
        event = EventInfo.model_validate(row)
        return event, await self._load_script(event.script_id)

    async def _load_script(self, script_id: Optional[str]) -> Optional[Script]:
        if not script_id:
            return None
        row = await self.backend.get_one(SCRIPTS, id=script_id)
        if row is None:
            logger.warning("script_missing", event_id=self.event_id, script_id=script_id)
            return None
        return parse_script(row.get("content_json"))

    def _apply_event_snapshot(
        self, snapshot: Tuple[EventInfo, Optional[Script]], _reason: str
    ) -> None:
        if self._closed:
            return
        event, script = snapshot
        script_changed = self.event is not None and self.event.script_id != event.script_id
        self.event = event
        self.script = script
        if script_changed:
            self._preview_index = None
            self._advance = None
            logger.info(
                "script_changed", event_id=self.event_id, script_id=event.script_id
            )

    def _apply_event_change(self, change: ChangeEvent) -> None:
        if self._closed or change.after is None:
            return
        try:
            event = EventInfo.model_validate(change.after)
        except ValidationError as e:
            logger.warning("event_malformed_row", event_id=self.event_id, error=str(e))
            return
        if self.event is not None and event.script_id != self.event.script_id:
            # Script attach/detach: reload it through the resync path
            self._spawn(self._event_sub.resync("script_changed"))
        else:
            self.event = event

    async def _fetch_run_state(self) -> RunState:
        state = await self.runs.ensure(self.event_id)
        try:
            await self._sample_server_offset()
        except EgregorError as e:
            logger.warning("server_clock_unavailable", event_id=self.event_id, error=str(e))
        return state

    def _apply_run_state(self, state: RunState) -> None:
        if self._closed:
            return
        self.run_state = state
        self.run_ready = True

    def _apply_presence_snapshot(self, rows: List[PresenceRow], _reason: str) -> None:
        if self._closed:
            return
        self.presence.replace(rows)
        self._sync_joined()

    def _apply_presence_change(self, change: ChangeEvent) -> None:
        if self._closed:
            return
        self.presence.apply(change)
        self._sync_joined()

    def _apply_chat_snapshot(self, rows: List[ChatMessage], reason: str) -> None:
        if not self._closed:
            self.chat.apply_snapshot(rows, reason)

    def _apply_chat_change(self, change: ChangeEvent) -> None:
        if not self._closed:
            self.chat.apply_change(change)

    # ---- roles and derived view ---------------------------------------------

    @property
    def is_host(self) -> bool:
        return (
            self.event is not None
            and bool(self.user_id)
            and self.user_id == self.event.host_user_id
        )

    @property
    def section_count(self) -> int:
        return len(self.script.sections) if self.script else 0

    @property
    def live_section_index(self) -> int:
        return clamp_section_index(self.run_state.section_index, self.section_count)

    @property
    def viewed_section_index(self) -> int:
        if self._preview_index is not None:
            return self._preview_index
        return self.live_section_index

    @property
    def previewing(self) -> bool:
        return self._preview_index is not None and self._preview_index != self.live_section_index

    def available_actions(self) -> FrozenSet[RunAction]:
        if not self.is_host or self.script is None:
            return frozenset()
        return legal_actions(self.run_state.mode)

    def seconds_left(self, now: Optional[datetime] = None) -> int:
        if self.script is None:
            return 0
        if self.previewing:
            # Previewed sections are read statically, not on a second timeline
            return section_duration_sec(self.script.sections[self.viewed_section_index])
        return seconds_left(self.run_state, self.script, now or self.now())

    def view(self, now: Optional[datetime] = None) -> RoomView:
        now = now or self.now()
        active, recent = self.presence.partition(now)
        return RoomView(
            event=self.event,
            script=self.script,
            is_host=self.is_host,
            run_state=self.run_state,
            run_ready=self.run_ready,
            live_section_index=self.live_section_index,
            viewed_section_index=self.viewed_section_index,
            previewing=self.previewing,
            seconds_left=self.seconds_left(now),
            countdown=format_seconds(self.seconds_left(now)),
            section_progress_pct=round(
                section_progress(self.run_state, self.script, now) * 100, 1
            ),
            total_progress_pct=round(total_progress(self.run_state, self.script, now) * 100, 1),
            run_status_label=run_status_label(self.run_state, self.script),
            available_actions=self.available_actions(),
            active=active,
            recent=recent,
            active_count=len(active),
            total_attendees=len(self.presence),
            is_joined=self.is_joined,
            messages=list(self.chat.messages),
            pending_message_count=self.chat.pending_count,
            unread_marker_id=self.chat.unread_marker_id,
            has_earlier_messages=self.chat.has_earlier,
            run_error=self.run_error,
            presence_error=self.presence_error,
            presence_message=self.presence_message,
            chat_error=self.chat_error,
        )

    # ---- display tick and auto-advance --------------------------------------

    async def _run_ticks(self) -> None:
        while not self._closed:
            self.tick()
            await asyncio.sleep(self.tick_sec)

    def tick(self) -> RoomView:
        """Recompute the view; the host also fires auto-advance at zero."""
        now = self.now()
        self._maybe_auto_advance(now)
        view = self.view(now)
        if self.on_view is not None:
            self.on_view(view)
        return view

    def _maybe_auto_advance(self, now: datetime) -> Optional[asyncio.Task]:
        state = self.run_state
        if self._closed or not self.is_host or self.script is None:
            return None
        if state.mode is not RunMode.RUNNING or state.started_at is None:
            return None
        if seconds_left(state, self.script, now) > 0:
            return None

        key = (state.section_index, state.started_at)
        guard = self._advance
        if guard is not None and guard.key == key:
            if guard.in_flight or guard.retry_at is None or now < guard.retry_at:
                return None
        self._advance = _AdvanceGuard(key)
        plan = plan_auto_advance(state, self.section_count)
        logger.info(
            "auto_advance",
            event_id=self.event_id,
            from_section=state.section_index,
            to_mode=plan.mode.value,
            to_section=plan.section_index,
        )
        return self._spawn(self._run_auto_advance(self._advance, plan))

    async def _run_auto_advance(self, guard: _AdvanceGuard, plan: TransitionPlan) -> None:
        ok = False
        try:
            ok = await self._apply_plan(plan, "advance")
        except Exception as e:
            logger.warning("auto_advance_error", event_id=self.event_id, error=repr(e))
            if not self._closed:
                self.run_error = str(e) or "Failed to advance."
        finally:
            guard.in_flight = False
            if not ok:
                guard.retry_at = self.now() + timedelta(seconds=self.auto_advance_retry_sec)

    # ---- host controls ------------------------------------------------------

    async def _apply_plan(self, plan: TransitionPlan, label: str) -> bool:
        self.run_error = ""
        try:
            state = await self.runs.transition(
                self.event_id,
                plan.mode,
                plan.section_index,
                plan.elapsed_before_pause_sec,
                plan.reset_timer,
            )
        except EgregorError as e:
            if not self._closed:
                self.run_error = str(e) or f"Failed to {label}."
            logger.warning(
                "run_state_transition_failed",
                event_id=self.event_id,
                action=label,
                error=str(e),
            )
            return False
        self._apply_run_state(state)
        return True

    async def _host_action(self, action: RunAction, target_index: Optional[int] = None) -> bool:
        if not self.is_host:
            raise NotHostError()
        if self.script is None:
            raise InvalidTransitionError("No script attached")
        plan = plan_transition(
            self.run_state,
            action,
            now=self.now(),
            section_count=self.section_count,
            target_index=target_index,
        )
        return await self._apply_plan(plan, action.value)

    async def host_start(self) -> bool:
        return await self._host_action(RunAction.START)

    async def host_pause(self) -> bool:
        return await self._host_action(RunAction.PAUSE)

    async def host_resume(self) -> bool:
        return await self._host_action(RunAction.RESUME)

    async def host_end(self) -> bool:
        return await self._host_action(RunAction.END)

    async def host_restart(self) -> bool:
        return await self._host_action(RunAction.RESTART)

    async def host_go_to(self, index: int) -> bool:
        return await self._host_action(RunAction.GOTO, target_index=index)

    # ---- non-host preview ---------------------------------------------------

    def select_section_for_preview(self, index: int) -> None:
        """Page through sections locally; never touches the shared run state."""
        if self.is_host or self.script is None:
            return
        idx = clamp_section_index(index, self.section_count)
        self._preview_index = None if idx == self.live_section_index else idx

    def follow_host(self) -> None:
        self._preview_index = None

    # ---- presence -----------------------------------------------------------

    def _sync_joined(self) -> None:
        joined = (
            not self._leaving
            and bool(self.user_id)
            and self.presence.contains(self.user_id or "")
        )
        if joined != self.is_joined:
            self.is_joined = joined
            self._sync_heartbeat()

    def _should_beat(self) -> bool:
        return (
            self.is_joined
            and self.foreground
            and not self._leaving
            and not self._closed
            and bool(self.user_id)
        )

    def _sync_heartbeat(self) -> None:
        if self._open and self._should_beat():
            self._heartbeat.start()
        else:
            self._heartbeat.stop()

    def _on_heartbeat_error(self, message: str) -> None:
        if not self._closed:
            self.presence_error = message

    async def _join(self, *, remember: bool) -> bool:
        if not self.user_id:
            raise NotAuthenticatedError()
        self._joining = True
        self.presence_error = ""
        self.presence_message = ""
        try:
            await self.tracker.join(self.event_id, self.user_id)
            if self._closed:
                return False
            self.is_joined = True
            self.presence_message = "You joined live."
            if remember:
                await self.preferences.set_joined_event(self.event_id, True)
            self._sync_heartbeat()
            await self._presence_sub.resync("join")
            return True
        except EgregorError as e:
            if not self._closed:
                self.presence_error = str(e) or "Failed to join live."
            return False
        finally:
            self._joining = False

    async def join(self) -> bool:
        """Join live and remember it for this event (sticky auto-join)."""
        if self._joining or self._leaving:
            return False
        return await self._join(remember=True)

    async def leave(self) -> bool:
        """Delete the presence row and forget the sticky join for this event."""
        if self._joining or self._leaving:
            return False
        if not self.user_id:
            raise NotAuthenticatedError()
        was_joined = self.is_joined
        self._leaving = True
        self.is_joined = False
        self._sync_heartbeat()
        self.presence_error = ""
        self.presence_message = "Leaving live..."
        try:
            await self.tracker.leave(self.event_id, self.user_id)
            self.presence_message = "You left live."
            await self.preferences.set_joined_event(self.event_id, False)
        except EgregorError as e:
            self.is_joined = was_joined
            self.presence_message = ""
            self.presence_error = str(e) or "Failed to leave."
            return False
        finally:
            self._leaving = False
            self._sync_heartbeat()
        await self._presence_sub.resync("leave")
        return True

    async def _maybe_auto_join(self) -> None:
        if self._closed or not self.user_id:
            return
        if not await self.preferences.auto_join_live():
            return
        if not await self.preferences.joined_event(self.event_id):
            return
        if self.is_joined or self._joining or self._leaving:
            return
        logger.info("auto_join", event_id=self.event_id, user_id=self.user_id)
        if not await self._join(remember=False) and not self.presence_error:
            self.presence_error = "Auto-join failed."

    def set_foreground(self, foreground: bool) -> None:
        self.foreground = foreground
        self._sync_heartbeat()

    async def set_auto_join_global(self, enabled: bool) -> None:
        await self.preferences.set_auto_join_live(enabled)

    # ---- chat ---------------------------------------------------------------

    async def _post(self, body: str) -> Optional[ChatMessage]:
        if not self.user_id:
            raise NotAuthenticatedError()
        self.chat_error = None
        optimistic = self.chat.add_optimistic(body, self.now())
        try:
            msg = await self.chat_repo.send(self.event_id, body, client_id=optimistic.id)
        except EgregorError as e:
            self.chat.discard(optimistic.id)
            self.chat_error = map_chat_send_error(str(e))
            logger.warning("chat_send_failed", event_id=self.event_id, error=str(e))
            return None
        if msg is not None and not self._closed:
            self.chat.confirm(msg)
        return msg

    async def send_message(self, text: str) -> Optional[ChatMessage]:
        """Post ``text``; blank text is ignored, over-long text is rejected."""
        body = validate_body(text)
        if body is None:
            return None
        return await self._post(body)

    async def send_energy_gift(self, amount: int) -> Optional[ChatMessage]:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return None
        return await self._post(energy_gift_body(amount))

    async def load_earlier_messages(self) -> int:
        """Page in older history; returns how many messages were added."""
        before = self.chat.oldest_created_at
        if self._loading_earlier or not self.chat.has_earlier or before is None:
            return 0
        self._loading_earlier = True
        try:
            rows, has_more = await self.chat_repo.list_earlier(self.event_id, before)
        except EgregorError as e:
            logger.warning("chat_load_earlier_error", event_id=self.event_id, error=str(e))
            return 0
        finally:
            self._loading_earlier = False
        if self._closed:
            return 0
        self.chat.prepend(rows, has_more)
        logger.debug(
            "chat_load_earlier_success",
            event_id=self.event_id,
            count=len(rows),
            has_more=has_more,
        )
        return len(rows)

    def on_chat_scroll(self, distance_from_bottom: float) -> None:
        self.chat.on_scroll(distance_from_bottom)

    def jump_to_latest(self) -> None:
        self.chat.jump_to_latest()
