"""Tests for the Redis broadcaster; skipped unless REDIS_URL is set."""

import os
import asyncio
import pytest

from egregor.core.realtime.run_state import RunStateStore
from egregor.core.realtime.schemas import EVENTS, RunMode
from egregor.infra.backend.memory import InMemoryBackend
from egregor.infra.broadcast.redis import RedisBroadcaster

REDIS_URL = os.getenv("REDIS_TEST_URL")

pytestmark = pytest.mark.skipif(not REDIS_URL, reason="REDIS_TEST_URL not set")


async def _consume(bc, channel, collected, ready, count):
    async for msg in bc.subscribe(channel):
        if not ready.is_set():
            ready.set()
        collected.append(msg)
        if len(collected) >= count:
            break


@pytest.mark.asyncio
async def test_redis_multiple_subscribers():
    """Two broadcaster instances both receive what a third publishes."""
    bc1 = RedisBroadcaster(REDIS_URL)
    bc2 = RedisBroadcaster(REDIS_URL)
    publisher = RedisBroadcaster(REDIS_URL)

    collected1, collected2 = [], []
    task1 = asyncio.create_task(
        _consume(bc1, "test:room:multi", collected1, asyncio.Event(), 2)
    )
    task2 = asyncio.create_task(
        _consume(bc2, "test:room:multi", collected2, asyncio.Event(), 2)
    )
    # Subscribing goes over the network; give both a moment to register
    await asyncio.sleep(0.3)

    await publisher.publish("test:room:multi", "msg1")
    await publisher.publish("test:room:multi", "msg2")

    try:
        await asyncio.wait_for(asyncio.gather(task1, task2), timeout=2.0)
    finally:
        for task in (task1, task2):
            task.cancel()

    assert collected1 == ["msg1", "msg2"]
    assert collected2 == ["msg1", "msg2"]

    await bc1.close()
    await bc2.close()
    await publisher.close()


@pytest.mark.asyncio
async def test_run_state_change_crosses_processes():
    """A run-state write on one server instance reaches a feed on another."""
    writer = InMemoryBackend(RedisBroadcaster(REDIS_URL), user_id="host")
    reader = InMemoryBackend(RedisBroadcaster(REDIS_URL))
    await writer.insert(EVENTS, {"id": "ev-redis", "host_user_id": "host"})

    received = []

    async def listen():
        async for state in RunStateStore(reader).subscribe("ev-redis"):
            received.append(state)
            return

    task = asyncio.create_task(listen())
    await asyncio.sleep(0.3)

    await RunStateStore(writer).transition("ev-redis", RunMode.RUNNING, 0, reset_timer=True)
    try:
        await asyncio.wait_for(task, timeout=2.0)
    finally:
        task.cancel()

    assert received[0].mode is RunMode.RUNNING
    await writer.broadcast.close()
    await reader.broadcast.close()
