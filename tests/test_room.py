"""Tests for the per-viewer event room controller."""

import asyncio
from datetime import timedelta

import pytest

from egregor.core.errors import (
    BackendError,
    ChatValidationError,
    EventNotFoundError,
    InvalidTransitionError,
    NotAuthenticatedError,
    NotHostError,
    RoomLoadError,
)
from egregor.core.realtime.chat import ChatRepo
from egregor.core.realtime.preferences import (
    AUTO_JOIN_LIVE_KEY,
    InMemoryPreferenceStore,
    joined_event_key,
)
from egregor.core.realtime.presence import PresenceTracker
from egregor.core.realtime.room import EventRoomController
from egregor.core.realtime.run_state import RunAction, RunStateStore
from egregor.core.realtime.schemas import EVENTS, MESSAGES, RUN_STATE, RunMode
from egregor.infra.backend.base import change_channel

SLOW = 3600


@pytest.fixture
def make_room(backend, clock):
    def _make(user_id, event_id="ev1", **kwargs):
        for key in (
            "tick_sec",
            "heartbeat_sec",
            "run_state_resync_sec",
            "presence_resync_sec",
            "chat_resync_sec",
        ):
            kwargs.setdefault(key, SLOW)
        kwargs.setdefault("clock", clock)
        return EventRoomController(backend.for_user(user_id), event_id, **kwargs)

    return _make


def _counting(store):
    calls = []
    original = store.transition

    async def transition(*args, **kwargs):
        calls.append(args)
        return await original(*args, **kwargs)

    store.transition = transition
    return calls


# ---- loading ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_open_loads_room_in_idle_state(seed_room, make_room):
    await seed_room()
    async with make_room("viewer") as room:
        view = room.view()
        assert view.run_ready
        assert view.run_state.mode is RunMode.IDLE
        assert len(view.script.sections) == 2
        assert view.seconds_left == 60
        assert view.countdown == "01:00"
        assert view.run_status_label == "Waiting for host to start"
        assert not view.is_host
        assert view.available_actions == frozenset()


@pytest.mark.asyncio
async def test_open_missing_event_raises(make_room):
    room = make_room("viewer", event_id="missing")
    with pytest.raises(EventNotFoundError):
        await room.open()
    assert not room.is_open


@pytest.mark.asyncio
async def test_initial_backend_failure_raises_room_load_error(backend, clock, seed_room):
    await seed_room()
    offline = backend.for_user("viewer")

    async def boom(*args, **kwargs):
        raise BackendError("offline")

    offline.select = boom
    room = EventRoomController(offline, "ev1", clock=clock, tick_sec=SLOW)
    with pytest.raises(RoomLoadError):
        await room.open()
    assert not room.is_open


@pytest.mark.asyncio
async def test_unusable_script_shows_no_script(seed_room, make_room):
    await seed_room(script={"sections": [{"name": "Broken", "minutes": 0}]})
    async with make_room("host") as room:
        view = room.view()
        assert view.script is None
        assert view.run_status_label == "No script attached"
        assert view.available_actions == frozenset()
        with pytest.raises(InvalidTransitionError):
            await room.host_start()


@pytest.mark.asyncio
async def test_server_clock_offset_corrects_local_clock(backend, clock, seed_room):
    await seed_room()
    # Device clock runs ten seconds behind the server
    room = EventRoomController(
        backend.for_user("viewer"),
        "ev1",
        clock=lambda: clock.now - timedelta(seconds=10),
        tick_sec=SLOW,
    )
    async with room:
        assert room.server_offset == timedelta(seconds=10)
        assert room.now() == clock.now


# ---- host controls and auto-advance -------------------------------------------


@pytest.mark.asyncio
async def test_host_auto_advances_to_next_section(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host") as host:
        assert host.is_host
        assert RunAction.START in host.available_actions()
        assert await host.host_start()

        clock.advance(60)
        assert host.view().seconds_left == 0
        host.tick()
        await host.settle()

        state = host.run_state
        assert state.mode is RunMode.RUNNING
        assert state.section_index == 1
        assert state.started_at == clock.now
        assert state.elapsed_before_pause_sec == 0
        assert host.view().seconds_left == 120


@pytest.mark.asyncio
async def test_auto_advance_on_last_section_ends_session(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host") as host:
        await host.host_start()
        await host.host_go_to(1)
        clock.advance(120)
        host.tick()
        await host.settle()

        assert host.run_state.mode is RunMode.ENDED
        assert host.run_state.section_index == 1
        view = host.view()
        assert view.section_progress_pct == 100.0
        assert view.total_progress_pct == 100.0
        assert view.available_actions == {RunAction.RESTART}


@pytest.mark.asyncio
async def test_auto_advance_fires_once_per_zero_crossing(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host") as host:
        await host.host_start()
        calls = _counting(host.runs)

        clock.advance(60)
        host.tick()
        host.tick()
        host.tick()
        await host.settle()
        host.tick()
        await host.settle()

        assert len(calls) == 1
        assert host.run_state.section_index == 1


@pytest.mark.asyncio
async def test_failed_auto_advance_is_retried_after_delay(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host", auto_advance_retry_sec=5) as host:
        await host.host_start()
        original = host.runs.transition
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise BackendError("blip")
            return await original(*args, **kwargs)

        host.runs.transition = flaky

        clock.advance(60)
        host.tick()
        await host.settle()
        assert host.run_error == "blip"
        assert host.run_state.section_index == 0

        host.tick()
        await host.settle()
        assert len(calls) == 1

        clock.advance(5)
        host.tick()
        await host.settle()
        assert len(calls) == 2
        assert host.run_state.section_index == 1
        assert host.run_error == ""


@pytest.mark.asyncio
async def test_unexpected_advance_error_does_not_wedge_guard(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host", auto_advance_retry_sec=5) as host:
        await host.host_start()
        original = host.runs.transition
        calls = []

        async def broken_socket(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OSError("connection reset")
            return await original(*args, **kwargs)

        host.runs.transition = broken_socket

        clock.advance(60)
        host.tick()
        await host.settle()
        assert host.run_error == "connection reset"
        assert host.run_state.section_index == 0

        clock.advance(5)
        host.tick()
        await host.settle()
        assert len(calls) == 2
        assert host.run_state.section_index == 1


@pytest.mark.asyncio
async def test_transition_failure_leaves_state_unchanged(seed_room, make_room):
    await seed_room()
    async with make_room("host") as host:
        await host.host_start()
        before = host.run_state

        async def offline(*args, **kwargs):
            raise BackendError("offline")

        host.runs.transition = offline
        assert await host.host_pause() is False
        assert host.run_error == "offline"
        assert host.run_state == before


@pytest.mark.asyncio
async def test_illegal_host_action_is_rejected(seed_room, make_room):
    await seed_room()
    async with make_room("host") as host:
        with pytest.raises(InvalidTransitionError):
            await host.host_resume()
        assert host.run_state.mode is RunMode.IDLE


@pytest.mark.asyncio
async def test_end_freezes_elapsed_and_restart_goes_to_first_section(seed_room, make_room, clock):
    await seed_room()
    async with make_room("host") as host:
        await host.host_start()
        await host.host_go_to(1)
        clock.advance(20)
        await host.host_end()
        assert host.run_state.mode is RunMode.ENDED
        assert host.run_state.elapsed_before_pause_sec == 20
        assert host.view().run_status_label == "Session ended"

        await host.host_restart()
        assert host.run_state.mode is RunMode.RUNNING
        assert host.run_state.section_index == 0
        assert host.run_state.elapsed_before_pause_sec == 0


# ---- viewers --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_viewer_follows_host_and_cannot_control(seed_room, make_room, clock, backend):
    await seed_room()
    async with make_room("host") as host, make_room("viewer") as viewer:
        await host.host_start()
        await asyncio.sleep(0.01)
        assert viewer.run_state.mode is RunMode.RUNNING
        assert viewer.view().run_status_label == "Live · Section 1 of 2"

        with pytest.raises(NotHostError):
            await viewer.host_pause()

        # Only the host instance advances at zero
        calls = _counting(viewer.runs)
        clock.advance(60)
        viewer.tick()
        await viewer.settle()
        assert calls == []


@pytest.mark.asyncio
async def test_preview_is_local_and_static(seed_room, make_room, backend, clock):
    await seed_room()
    async with make_room("host") as host, make_room("viewer") as viewer:
        await host.host_start()
        await asyncio.sleep(0.01)

        viewer.select_section_for_preview(1)
        clock.advance(10)
        view = viewer.view()
        assert view.previewing
        assert view.viewed_section_index == 1
        assert view.live_section_index == 0
        assert view.seconds_left == 120

        stored = await RunStateStore(backend).get("ev1")
        assert stored.section_index == 0

        viewer.follow_host()
        assert not viewer.previewing
        assert viewer.view().seconds_left == 50


@pytest.mark.asyncio
async def test_close_stops_callbacks_and_subscriptions(seed_room, make_room, backend, broadcaster):
    await seed_room()
    viewer = make_room("viewer")
    await viewer.open()
    assert broadcaster.subscriber_count(change_channel(RUN_STATE)) == 1

    viewer.close()
    await asyncio.sleep(0.01)
    assert broadcaster.subscriber_count(change_channel(RUN_STATE)) == 0

    await RunStateStore(backend.for_user("host")).transition(
        "ev1", RunMode.RUNNING, 0, reset_timer=True
    )
    await asyncio.sleep(0.01)
    assert viewer.run_state.mode is RunMode.IDLE


@pytest.mark.asyncio
async def test_reopen_does_not_duplicate_subscriptions(seed_room, make_room, broadcaster):
    await seed_room()
    room = make_room("viewer")
    await room.open()
    await room.open()
    assert broadcaster.subscriber_count(change_channel(RUN_STATE)) == 1

    room.close()
    await asyncio.sleep(0.01)
    await room.open()
    assert broadcaster.subscriber_count(change_channel(RUN_STATE)) == 1
    room.close()


@pytest.mark.asyncio
async def test_script_detach_resets_room(seed_room, make_room, backend):
    await seed_room()
    async with make_room("viewer") as viewer:
        viewer.select_section_for_preview(1)
        await backend.upsert(
            EVENTS, {"id": "ev1", "script_id": None}, update_columns=["script_id"]
        )
        await asyncio.sleep(0.01)
        await viewer.settle()

        assert viewer.script is None
        assert not viewer.previewing
        assert viewer.view().run_status_label == "No script attached"


# ---- join lifecycle ---------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "auto_join, sticky, expected",
    [(True, True, True), (True, False, False), (False, True, False)],
)
async def test_auto_join_requires_both_preferences(
    seed_room, make_room, backend, auto_join, sticky, expected
):
    await seed_room()
    prefs = InMemoryPreferenceStore(
        {AUTO_JOIN_LIVE_KEY: auto_join, joined_event_key("ev1"): sticky}
    )
    async with make_room("viewer", preferences=prefs) as room:
        assert room.is_joined is expected
        rows = await PresenceTracker(backend).list("ev1")
        assert [r.user_id for r in rows] == (["viewer"] if expected else [])


@pytest.mark.asyncio
async def test_manual_join_and_leave_update_sticky_preference(seed_room, make_room, backend):
    await seed_room()
    prefs = InMemoryPreferenceStore()
    async with make_room("viewer", preferences=prefs) as room:
        assert not room.is_joined
        assert await room.join()
        assert room.is_joined
        assert room.presence_message == "You joined live."
        assert await prefs.joined_event("ev1") is True
        assert room.view().active_count == 1

        assert await room.leave()
        assert not room.is_joined
        assert room.presence_message == "You left live."
        assert await prefs.joined_event("ev1") is False
        assert await PresenceTracker(backend).list("ev1") == []
        assert room.view().total_attendees == 0


@pytest.mark.asyncio
async def test_join_requires_signed_in_user(seed_room, make_room):
    await seed_room()
    async with make_room(None) as room:
        with pytest.raises(NotAuthenticatedError):
            await room.join()


@pytest.mark.asyncio
async def test_heartbeat_only_while_joined_and_foreground(seed_room, make_room, backend, clock):
    await seed_room()
    async with make_room("viewer", heartbeat_sec=0.01) as room:
        await room.join()
        clock.advance(30)
        await asyncio.sleep(0.05)
        (row,) = await PresenceTracker(backend).list("ev1")
        assert row.last_seen_at == clock.now

        room.set_foreground(False)
        seen = clock.now
        clock.advance(30)
        await asyncio.sleep(0.05)
        (row,) = await PresenceTracker(backend).list("ev1")
        assert row.last_seen_at == seen


@pytest.mark.asyncio
async def test_auto_join_global_toggle_is_persisted(seed_room, make_room):
    await seed_room()
    prefs = InMemoryPreferenceStore()
    async with make_room("viewer", preferences=prefs) as room:
        await room.set_auto_join_global(False)
        assert await prefs.auto_join_live() is False


# ---- chat ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_message_shows_once_after_echo(seed_room, make_room):
    await seed_room()
    async with make_room("viewer") as room:
        msg = await room.send_message("  hello circle  ")
        assert msg.body == "hello circle"
        await asyncio.sleep(0.01)

        assert [m.id for m in room.chat.messages] == [msg.id]
        assert room.chat.optimistic_count == 0


@pytest.mark.asyncio
async def test_send_failure_maps_error_and_drops_optimistic(seed_room, make_room):
    await seed_room()
    async with make_room("viewer") as room:

        async def rate_limited(*args, **kwargs):
            raise BackendError("Too many messages")

        room.chat_repo.send = rate_limited
        assert await room.send_message("hi") is None
        assert room.chat_error.title == "Slow down"
        assert room.chat.messages == []


@pytest.mark.asyncio
async def test_send_validation(seed_room, make_room):
    await seed_room()
    async with make_room("viewer") as room:
        assert await room.send_message("   ") is None
        with pytest.raises(ChatValidationError):
            await room.send_message("x" * 1001)
        assert room.chat.messages == []


@pytest.mark.asyncio
async def test_energy_gift(seed_room, make_room):
    await seed_room()
    async with make_room("viewer") as room:
        gift = await room.send_energy_gift(7)
        assert gift.body == "Sent 7 energy to this circle."
        assert await room.send_energy_gift(0) is None
        assert await room.send_energy_gift(-3) is None


@pytest.mark.asyncio
async def test_load_earlier_messages(seed_room, make_room, backend, clock):
    await seed_room()
    for i in range(205):
        await backend.insert(
            MESSAGES,
            {
                "id": f"m{i:03d}",
                "event_id": "ev1",
                "user_id": "someone",
                "body": str(i),
                "created_at": clock.now - timedelta(seconds=205 - i),
            },
        )
    async with make_room("viewer") as room:
        assert len(room.chat.messages) == 200
        assert room.chat.has_earlier

        added = await room.load_earlier_messages()
        assert added == 5
        assert [m.id for m in room.chat.messages[:2]] == ["m000", "m001"]
        assert len(room.chat.messages) == 205
        assert not room.chat.has_earlier
        assert await room.load_earlier_messages() == 0


@pytest.mark.asyncio
async def test_chat_scroll_and_jump(seed_room, make_room, backend):
    await seed_room()
    async with make_room("viewer") as room:
        room.on_chat_scroll(500)
        await ChatRepo(backend.for_user("someone")).send("ev1", "are you there?")
        await asyncio.sleep(0.01)
        assert room.view().pending_message_count == 1

        room.jump_to_latest()
        assert room.view().pending_message_count == 0
