"""HTTP surface of the room API."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from egregor.api.deps import set_backend
from egregor.api.main import app
from egregor.api.routers.rooms import format_sse_event
from egregor.core.realtime.schemas import EVENTS
from egregor.core.settings import settings
from egregor.infra.backend.memory import InMemoryBackend
from egregor.infra.broadcast.memory import InMemoryBroadcaster

HOST = {"X-User-Id": "host"}
GUEST = {"X-User-Id": "guest"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "DEV_USER_ID", None)
    backend = InMemoryBackend(InMemoryBroadcaster())
    asyncio.run(
        backend.insert(
            EVENTS,
            {"id": "ev1", "title": "Full moon", "host_user_id": "host", "created_by": "host"},
        )
    )
    set_backend(backend)
    with TestClient(app) as c:
        yield c
    set_backend(None)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "room-sync"}


def test_metrics_endpoint(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "# HELP" in resp.text


def test_run_state_starts_idle(client):
    resp = client.get("/api/events/ev1/run-state", headers=GUEST)
    assert resp.status_code == 200
    body = resp.json()
    assert body["state"]["mode"] == "idle"
    assert body["state"]["sectionIndex"] == 0
    assert body["legal_actions"] == ["goto", "start"]
    assert body["server_now"]


def test_host_can_start(client):
    resp = client.post(
        "/api/events/ev1/run-state",
        json={"mode": "running", "section_index": 0, "reset_timer": True},
        headers=HOST,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["state"]["mode"] == "running"
    assert body["state"]["startedAt"]
    assert body["legal_actions"] == ["end", "goto", "pause"]

    again = client.get("/api/events/ev1/run-state", headers=GUEST).json()
    assert again["state"] == body["state"]


def test_non_host_transition_forbidden(client):
    resp = client.post(
        "/api/events/ev1/run-state", json={"mode": "running"}, headers=GUEST
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"


def test_transition_requires_user(client):
    resp = client.post("/api/events/ev1/run-state", json={"mode": "running"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


def test_transition_missing_event(client):
    resp = client.post(
        "/api/events/nope/run-state", json={"mode": "running"}, headers=HOST
    )
    assert resp.status_code == 404


def test_transition_rejects_negative_section(client):
    resp = client.post(
        "/api/events/ev1/run-state",
        json={"mode": "running", "section_index": -1},
        headers=HOST,
    )
    assert resp.status_code == 422


def test_presence_join_heartbeat_leave(client):
    resp = client.post("/api/events/ev1/presence/join", headers=GUEST)
    assert resp.status_code == 200
    joined_at = resp.json()["presence"]["joined_at"]

    beat = client.post("/api/events/ev1/presence/heartbeat", headers=GUEST).json()
    assert beat["presence"]["joined_at"] == joined_at

    listing = client.get("/api/events/ev1/presence").json()
    assert listing["active_count"] == 1
    assert listing["total"] == 1
    assert [r["user_id"] for r in listing["active"]] == ["guest"]
    assert listing["recent"] == []

    assert client.post("/api/events/ev1/presence/leave", headers=GUEST).json() == {"ok": True}
    assert client.get("/api/events/ev1/presence").json()["total"] == 0


def test_presence_join_requires_user(client):
    resp = client.post("/api/events/ev1/presence/join")
    assert resp.status_code == 401


def test_post_and_list_messages(client):
    first = client.post(
        "/api/events/ev1/messages",
        json={"body": "  welcome  ", "client_id": "cid-1"},
        headers=HOST,
    )
    assert first.status_code == 201
    assert first.json()["id"] == "cid-1"
    assert first.json()["body"] == "welcome"

    client.post("/api/events/ev1/messages", json={"body": "hello"}, headers=GUEST)

    listing = client.get("/api/events/ev1/messages").json()
    assert [m["body"] for m in listing["messages"]] == ["welcome", "hello"]
    assert listing["has_more"] is False


def test_message_validation(client):
    blank = client.post("/api/events/ev1/messages", json={"body": "   "}, headers=GUEST)
    assert blank.status_code == 422
    assert blank.json()["error"]["message"] == "Message cannot be empty"

    long = client.post("/api/events/ev1/messages", json={"body": "x" * 1001}, headers=GUEST)
    assert long.status_code == 422
    assert "1000" in long.json()["error"]["message"]


def test_post_message_requires_user(client):
    resp = client.post("/api/events/ev1/messages", json={"body": "hi"})
    assert resp.status_code == 401


def test_format_sse_event():
    frame = format_sse_event("run_state.update", {"mode": "paused"})
    assert frame.startswith("event: run_state.update\ndata: ")
    assert frame.endswith("\n\n")
    data = json.loads(frame.split("data: ", 1)[1])
    assert data == {"type": "run_state.update", "payload": {"mode": "paused"}}
