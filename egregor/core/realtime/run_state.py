"""Run-state storage, normalization and the host-side state machine."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, FrozenSet, Mapping, Optional

from egregor.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    NotAuthenticatedError,
    NotAuthorizedError,
)
from egregor.core.obs.metrics import RUN_STATE_TRANSITIONS
from egregor.core.realtime.countdown import clamp_section_index, elapsed_in_section
from egregor.core.realtime.schemas import EVENTS, RUN_STATE, RunMode, RunState
from egregor.core.settings import settings
from egregor.infra.backend.base import DataBackend, as_utc

logger = logging.getLogger(__name__)


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float) and math.isfinite(value):
        return max(0, math.floor(value))
    return 0


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def normalize_run_state(raw: Any) -> RunState:
    """
    Parse a stored or received run-state document, repairing anything missing
    or malformed: unknown modes become idle, indices and elapsed seconds are
    coerced to non-negative ints, bad timestamps are dropped.

    ``startedAt`` is kept only while running. A running state without a usable
    ``startedAt`` is demoted to paused so its countdown freezes at the
    recorded elapsed time instead of guessing a start.
    """
    if not isinstance(raw, Mapping):
        return RunState()

    try:
        mode = RunMode(raw.get("mode"))
    except ValueError:
        mode = RunMode.IDLE

    section_index = _non_negative_int(raw.get("sectionIndex", raw.get("section_index")))
    elapsed = _non_negative_int(
        raw.get("elapsedBeforePauseSec", raw.get("elapsed_before_pause_sec"))
    )
    started_at = _timestamp(raw.get("startedAt", raw.get("started_at")))
    paused_at = _timestamp(raw.get("pausedAt", raw.get("paused_at")))

    if mode is RunMode.RUNNING and started_at is None:
        mode = RunMode.PAUSED
    if mode is not RunMode.RUNNING:
        started_at = None

    return RunState(
        mode=mode,
        section_index=section_index,
        started_at=started_at,
        paused_at=paused_at if mode is RunMode.PAUSED else None,
        elapsed_before_pause_sec=elapsed,
    )


class RunAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    END = "end"
    RESTART = "restart"
    GOTO = "goto"


_LEGAL_ACTIONS: dict[RunMode, FrozenSet[RunAction]] = {
    RunMode.IDLE: frozenset({RunAction.START, RunAction.GOTO}),
    RunMode.RUNNING: frozenset({RunAction.PAUSE, RunAction.END, RunAction.GOTO}),
    RunMode.PAUSED: frozenset({RunAction.RESUME, RunAction.END, RunAction.GOTO}),
    RunMode.ENDED: frozenset({RunAction.RESTART}),
}


def legal_actions(mode: RunMode) -> FrozenSet[RunAction]:
    return _LEGAL_ACTIONS[mode]


@dataclass(frozen=True)
class TransitionPlan:
    """Arguments for ``RunStateStore.transition``."""

    mode: RunMode
    section_index: int
    elapsed_before_pause_sec: int = 0
    reset_timer: bool = False


def plan_transition(
    state: RunState,
    action: RunAction,
    *,
    now: datetime,
    section_count: int,
    target_index: Optional[int] = None,
) -> TransitionPlan:
    """
    Compute the next write for a host action from the host's current view.

    Raises InvalidTransitionError for actions the current mode does not
    offer. Restart re-enters running at section 0.
    """
    if action not in _LEGAL_ACTIONS[state.mode]:
        raise InvalidTransitionError(
            f"Cannot {action.value} while the session is {state.mode.value}"
        )
    idx = clamp_section_index(state.section_index, section_count)

    if action is RunAction.START:
        return TransitionPlan(RunMode.RUNNING, idx, 0, True)
    if action is RunAction.PAUSE:
        return TransitionPlan(RunMode.PAUSED, idx, elapsed_in_section(state, now), False)
    if action is RunAction.RESUME:
        return TransitionPlan(RunMode.RUNNING, idx, state.elapsed_before_pause_sec, False)
    if action is RunAction.END:
        return TransitionPlan(RunMode.ENDED, idx, elapsed_in_section(state, now), False)
    if action is RunAction.RESTART:
        return TransitionPlan(RunMode.RUNNING, 0, 0, True)

    if target_index is None:
        raise InvalidTransitionError("goto requires a target section")
    return TransitionPlan(
        state.mode, clamp_section_index(target_index, section_count), 0, True
    )


def plan_auto_advance(state: RunState, section_count: int) -> TransitionPlan:
    """Next section with a fresh timer, or ended after the last one."""
    idx = clamp_section_index(state.section_index, section_count)
    if idx + 1 < section_count:
        return TransitionPlan(RunMode.RUNNING, idx + 1, 0, True)
    return TransitionPlan(RunMode.ENDED, idx, 0, False)


class RunStateStore:
    """
    Single source of truth for one event's synchronized playback position.

    The store does not check that a mode change is legal; the host is trusted
    to only request actions ``legal_actions`` offers. Who may write is checked
    when ``enforce_host`` is on: only the event's host or creator.
    """

    def __init__(self, backend: DataBackend, *, enforce_host: Optional[bool] = None) -> None:
        self.backend = backend
        self.enforce_host = (
            settings.RUN_STATE_ENFORCE_HOST if enforce_host is None else enforce_host
        )

    async def get(self, event_id: str) -> Optional[RunState]:
        row = await self.backend.get_one(RUN_STATE, event_id=event_id)
        return normalize_run_state(row["state"]) if row else None

    async def ensure(self, event_id: str) -> RunState:
        """Return the stored state, creating the idle default if absent.

        Create-if-absent is a do-nothing-on-conflict upsert, so concurrent first
        opens all read back the one row that won.
        """
        row = await self.backend.upsert(
            RUN_STATE,
            {"event_id": event_id, "state": RunState().to_storage()},
            update_columns=[],
        )
        return normalize_run_state(row.get("state"))

    async def _authorize(self, event_id: str) -> None:
        uid = await self.backend.current_user_id()
        if not uid:
            raise NotAuthenticatedError()
        event = await self.backend.get_one(EVENTS, id=event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if uid not in (event.get("host_user_id"), event.get("created_by")):
            raise NotAuthorizedError()

    async def transition(
        self,
        event_id: str,
        mode: RunMode | str,
        section_index: int,
        elapsed_before_pause_sec: int = 0,
        reset_timer: bool = False,
    ) -> RunState:
        """
        Write the next state, stamping ``startedAt`` (running) or ``pausedAt``
        (paused) from the backend's clock rather than the caller's.
        """
        mode = RunMode(mode)
        try:
            if self.enforce_host:
                await self._authorize(event_id)
            now = await self.backend.server_now()
            nxt = RunState(
                mode=mode,
                section_index=max(0, section_index),
                started_at=now if mode is RunMode.RUNNING else None,
                paused_at=now if mode is RunMode.PAUSED else None,
                elapsed_before_pause_sec=0 if reset_timer else max(0, elapsed_before_pause_sec),
            )
            row = await self.backend.upsert(
                RUN_STATE,
                {"event_id": event_id, "state": nxt.to_storage()},
                update_columns=["state"],
            )
        except Exception:
            RUN_STATE_TRANSITIONS.labels(mode=mode.value, outcome="error").inc()
            raise
        RUN_STATE_TRANSITIONS.labels(mode=mode.value, outcome="ok").inc()
        logger.info(
            "Run state -> %s (section %d)",
            mode.value,
            nxt.section_index,
            extra={"event_id": event_id, "mode": mode.value},
        )
        return normalize_run_state(row.get("state"))

    async def subscribe(self, event_id: str) -> AsyncIterator[RunState]:
        """Every state write as it happens; not exactly-once, not gap-free."""
        async for evt in self.backend.subscribe(RUN_STATE, eq={"event_id": event_id}):
            if evt.after is not None:
                yield normalize_run_state(evt.after.get("state"))
