import pytest
from fastapi.testclient import TestClient

from conftest import FakeTransport

from dsf_tracker.api_main import create_app
from dsf_tracker.config import Settings
from dsf_tracker.store import MemoryKeyValueStore


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(monkeypatch, transport):
    monkeypatch.delenv("TRACKER_API_KEY", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "test")
    app = create_app(Settings.from_env(), transport=transport, kv=MemoryKeyValueStore())
    with TestClient(app) as c:
        yield c


def _ingest_whale(client):
    r = client.post("/ingest/chat", json={"world": 50, "lines": [{"text": "A whale has appeared at the hub!"}]})
    assert r.status_code == 200
    return r.json()


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["ok"] is True
    assert body["env"] == "test"


def test_chat_ingest_tracks_event(client, transport):
    body = _ingest_whale(client)
    assert body["world"] == "50"
    assert [c["kind"] for c in body["classifications"]] == ["Whale"]
    assert body["classifications"][0]["phase"] == "start"

    events = client.get("/events").json()["events"]
    assert [e["kind"] for e in events] == ["Whale"]
    assert events[0]["active"] is True
    assert len(transport.creates) == 1


def test_edit_and_delete_event(client, transport):
    _ingest_whale(client)
    event_id = client.get("/events").json()["events"][0]["id"]

    r = client.patch(f"/events/{event_id}", json={"duration": 30})
    assert r.status_code == 200
    assert r.json()["event"]["duration"] == 30
    assert r.json()["event"]["mutation"] == "edit"

    assert client.patch(f"/events/{event_id}", json={"kind": "kraken"}).status_code == 422
    assert client.patch(f"/events/{event_id}", json={"duration": -1}).status_code == 422
    assert client.patch("/events/missing", json={"duration": 5}).status_code == 404

    assert client.delete(f"/events/{event_id}").json()["deleted"] is True
    assert client.delete(f"/events/{event_id}").json()["deleted"] is False
    assert client.get("/events/history").json()["events"] == []
    assert [d.id for d in transport.deletes] == [event_id]


def test_relay_accepts_records_and_rejects_garbage(client):
    record = {
        "id": "remote-1",
        "type": "addEvent",
        "event": "Jellyfish",
        "world": "84",
        "duration": 120,
        "timestamp": 1_700_000_000_000,
        "reportedBy": "Other",
    }
    r = client.post("/relay", json=record)
    assert r.status_code == 200
    assert r.json()["type"] == "Create"
    assert [e["id"] for e in client.get("/events/history").json()["events"]] == ["remote-1"]

    assert client.post("/relay", json={"type": "mystery"}).status_code == 422


def test_world_endpoint(client):
    _ingest_whale(client)
    body = client.get("/world").json()
    assert body["current"] == "50"
    assert body["quiet"] is False
    assert body["notices"] == []


def test_api_key_is_enforced(monkeypatch):
    monkeypatch.setenv("TRACKER_API_KEY", "s3cret")
    app = create_app(Settings.from_env(), transport=FakeTransport(), kv=MemoryKeyValueStore())
    with TestClient(app) as c:
        payload = {"lines": [{"text": "hello"}]}
        assert c.post("/ingest/chat", json=payload).status_code == 401
        assert c.post("/ingest/chat", json=payload, headers={"x-api-key": "s3cret"}).status_code == 200
        assert c.get("/events").status_code == 200
