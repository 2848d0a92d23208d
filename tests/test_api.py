"""
Tests for the admin/ops HTTP surface.

Services are injected with an in-memory store, the mock gateway and a
fixed clock; the lifespan (background dispatcher, poller) is not started.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from api.main import build_services, create_app
from channels.mock_gateway import MockGateway
from config.settings import QueueConfig, Settings
from core.calendar import FixedClock
from database.store_memory import InMemoryQueueStore
from models.errors import QueueStoreUnavailable
from models.schemas import Event, UserProfile

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def services():
    settings = Settings(queue=QueueConfig(send_delay_seconds=0, calendar_cache_ttl_seconds=0))
    return build_services(settings, store=InMemoryQueueStore(), gateway=MockGateway(),
                          clock=FixedClock(NOW))


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

class TestQueueEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["gateway"]["gateway"] == "mock"
        assert data["dispatcher"]["running"] is False

    def test_enqueue_then_process(self, client, services):
        resp = client.post("/queue/messages", json={
            "recipient": "+919800000001", "kind": "DIRECT_REPLY", "payload_text": "ack",
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["priority"] == 5

        resp = client.post("/queue/process")
        assert resp.status_code == 200
        data = resp.json()
        assert data["cycle"]["sent"] == 1
        assert data["stats"]["sent"] == 1
        assert data["stats"]["total"] == 1
        assert [c.text for c in services.gateway.calls] == ["ack"]

    def test_stats_shape(self, client):
        resp = client.get("/queue/stats")
        assert resp.status_code == 200
        assert resp.json() == {"pending": 0, "sent": 0, "failed": 0, "cancelled": 0, "total": 0}

    def test_blank_recipient_is_422(self, client):
        resp = client.post("/queue/messages", json={
            "recipient": " ", "kind": "SYSTEM_UPDATE", "payload_text": "x",
        })
        assert resp.status_code == 422
        assert resp.json()["reason"] == "blank recipient"

    def test_unknown_kind_is_422(self, client):
        resp = client.post("/queue/messages", json={
            "recipient": "+91", "kind": "NEWSLETTER", "payload_text": "x",
        })
        assert resp.status_code == 422

    def test_cancel_and_list(self, client):
        for kind in ("EVENT_BROADCAST", "SYSTEM_UPDATE"):
            client.post("/queue/messages", json={
                "recipient": "+919800000001", "kind": kind, "payload_text": kind,
            })
        resp = client.post("/queue/cancel", json={"recipient": "+919800000001", "kind": "EVENT_BROADCAST"})
        assert resp.json() == {"recipient": "+919800000001", "cancelled": 1}

        cancelled = client.get("/queue/messages", params={"status": "CANCELLED"}).json()["messages"]
        assert [m["payload_text"] for m in cancelled] == ["EVENT_BROADCAST"]
        everything = client.get("/queue/messages", params={"recipient": "+919800000001"}).json()
        assert len(everything["messages"]) == 2

    def test_store_outage_is_503(self, client, services):
        services.store.status_counts = AsyncMock(side_effect=QueueStoreUnavailable("status_counts"))
        resp = client.get("/queue/stats")
        assert resp.status_code == 503
        assert resp.json()["operation"] == "status_counts"


# ──────────────────────────────────────────────────────────────
#  Calendar
# ──────────────────────────────────────────────────────────────

class TestCalendarEndpoints:
    def test_empty_calendar_fails_open(self, client):
        data = client.get("/calendar").json()
        assert data["timezone"] == "UTC"
        assert data["windows"] == []
        assert data["is_send_window"] is True
        assert data["next_send_instant"] is None

    def test_add_window_changes_admission(self, client):
        resp = client.post("/calendar/windows", json={
            "day_of_week": 1, "start_time": "14:00", "end_time": "18:00",
        })
        assert resp.status_code == 201
        assert resp.json()["id"] is not None

        data = client.get("/calendar").json()
        assert data["is_send_window"] is False
        assert data["next_send_instant"] == (NOW + timedelta(hours=2)).isoformat()

        msg = client.post("/queue/messages", json={
            "recipient": "+919800000001", "kind": "SYSTEM_UPDATE", "payload_text": "later",
        }).json()
        scheduled = datetime.fromisoformat(msg["scheduled_for"].replace("Z", "+00:00"))
        assert scheduled == NOW + timedelta(hours=2)

    def test_window_crossing_midnight_is_rejected(self, client):
        resp = client.post("/calendar/windows", json={
            "day_of_week": 5, "start_time": "22:00", "end_time": "02:00",
        })
        assert resp.status_code == 422


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class TestEventEndpoints:
    def _seed(self, services) -> int:
        async def seed():
            await services.store.upsert_user(UserProfile(recipient="+91u1", onboarding_completed=True,
                                                         interests=["Tech"]))
            event = await services.store.create_event(Event(
                title="Hack Night", category="Tech", event_date=NOW + timedelta(days=1),
                target_audience=["Tech"],
            ))
            return event.id
        return asyncio.run(seed())

    def test_approve_broadcasts(self, client, services):
        event_id = self._seed(services)
        resp = client.post(f"/events/{event_id}/approve")
        assert resp.status_code == 200
        data = resp.json()
        assert data["event"]["status"] == "APPROVED"
        assert data["broadcast"]["enqueued"] == 1

        # already broadcast: nothing left for the pass
        assert client.post("/events/broadcast").json() == {"events": []}

    def test_approve_missing_event_is_404(self, client):
        assert client.post("/events/999/approve").status_code == 404
