"""Pytest configuration and fixtures for the room sync tests

Provides:
- clock: controllable server/local clock
- backend: in-memory data backend on that clock
- seed_room: inserts an event (and optionally its script)
"""

import os

os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("DATABASE_URL", "")

import sys  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))
from egregor.core.realtime.schemas import EVENTS, SCRIPTS  # noqa: E402
from egregor.infra.backend.memory import InMemoryBackend  # noqa: E402
from egregor.infra.broadcast.memory import InMemoryBroadcaster  # noqa: E402

T0 = datetime(2026, 3, 1, 20, 0, 0, tzinfo=timezone.utc)

# Two sections: 60s and 120s
SCRIPT_JSON = {
    "title": "Full moon circle",
    "durationMinutes": 3,
    "tone": "calm",
    "sections": [
        {"name": "Arrive", "minutes": 1, "text": "Settle in."},
        {"name": "Intend", "minutes": 2, "text": "Hold the intention."},
    ],
}


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def backend(broadcaster, clock):
    """Anonymous view; use ``backend.for_user(...)`` to act as someone."""
    return InMemoryBackend(broadcaster, clock=clock)


@pytest.fixture
def seed_room(backend):
    async def _seed(event_id="ev1", host="host", script=SCRIPT_JSON):
        script_id = None
        if script is not None:
            script_id = f"script-{event_id}"
            await backend.insert(
                SCRIPTS, {"id": script_id, "title": "Circle", "content_json": script}
            )
        await backend.insert(
            EVENTS,
            {
                "id": event_id,
                "title": "Full moon",
                "host_user_id": host,
                "created_by": host,
                "script_id": script_id,
            },
        )
        return event_id

    return _seed
