"""
Tests for event broadcast fan-out.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from core.broadcast import BroadcastFanOut, BroadcastPoller, render_event_message
from models.errors import EventNotFound, QueueStoreUnavailable
from models.schemas import (
    EnqueueOptions, Event, EventStatus, MessageKind, MessageStatus, UserProfile,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fanout(store, queue, clock):
    return BroadcastFanOut(store, queue, clock=clock, tz="Asia/Kolkata")


@pytest.fixture
def users(store):
    async def _seed():
        await store.upsert_user(UserProfile(recipient="+91u1", name="U1", onboarding_completed=True,
                                            interests=["Tech"]))
        await store.upsert_user(UserProfile(recipient="+91u2", name="U2", onboarding_completed=True,
                                            interests=["Arts"]))
        await store.upsert_user(UserProfile(recipient="+91u3", name="U3", onboarding_completed=True,
                                            interests=["Tech", "Sports"]))
    return _seed


async def approved_event(store, **kw) -> Event:
    fields = {"title": "Hack Night", "description": "Build things", "category": "Tech",
              "location": "Lab 2", "event_date": NOW + timedelta(days=2),
              "target_audience": ["Tech", "Sports"]}
    fields.update(kw)
    event = await store.create_event(Event(**fields))
    return await store.approve_event(event.id)


# ──────────────────────────────────────────────────────────────
#  Rendering
# ──────────────────────────────────────────────────────────────

class TestRender:
    def test_contains_event_details(self):
        event = Event(id=3, title="Hack Night", description="Build things", category="Tech",
                      location="Lab 2", event_date=datetime(2024, 1, 3, 12, 30, tzinfo=timezone.utc))
        text = render_event_message(event, "Asia/Kolkata")
        assert "Hack Night" in text
        assert "Build things" in text
        assert "Lab 2" in text
        assert "Wed 03 Jan 2024, 06:00 PM" in text
        assert "Not required" in text

    def test_registration_hint(self):
        base = dict(title="T", event_date=NOW, registration_required=True)
        assert "https://reg.example.org" in render_event_message(
            Event(id=1, registration_link="https://reg.example.org", **base))
        assert "Contact organizer" in render_event_message(Event(id=1, **base))

    def test_same_event_renders_identically(self):
        event = Event(id=7, title="T", event_date=NOW)
        assert render_event_message(event) == render_event_message(event)


# ──────────────────────────────────────────────────────────────
#  Fan-out
# ──────────────────────────────────────────────────────────────

class TestFanOut:
    @pytest.mark.asyncio
    async def test_audience_fan_out(self, fanout, store, users):
        await users()
        event = await approved_event(store, poster_url="https://cdn.example.org/hack.png")

        reports = await fanout.broadcast_pending_events()
        assert len(reports) == 1
        assert reports[0].enqueued == 2
        assert reports[0].completed is True

        queued = await store.list_messages()
        assert sorted(m.recipient for m in queued) == ["+91u1", "+91u3"]
        for m in queued:
            assert m.kind == MessageKind.EVENT_BROADCAST
            assert m.priority == 6
            assert m.media_url == "https://cdn.example.org/hack.png"
            assert m.metadata["event_id"] == event.id
        assert len({m.payload_text for m in queued}) == 1
        assert (await store.get_event(event.id)).broadcast_sent is True

    @pytest.mark.asyncio
    async def test_empty_audience_targets_everyone_onboarded(self, fanout, store, users):
        await users()
        await store.upsert_user(UserProfile(recipient="+91new", onboarding_completed=False))
        await approved_event(store, target_audience=[])
        await fanout.broadcast_pending_events()
        assert sorted(m.recipient for m in await store.list_messages()) == ["+91u1", "+91u2", "+91u3"]

    @pytest.mark.asyncio
    async def test_second_pass_enqueues_nothing(self, fanout, store, users):
        await users()
        await approved_event(store)
        await fanout.broadcast_pending_events()
        assert await fanout.broadcast_pending_events() == []
        assert len(await store.list_messages()) == 2

    @pytest.mark.asyncio
    async def test_past_and_unapproved_events_are_skipped(self, fanout, store, users):
        await users()
        await approved_event(store, event_date=NOW - timedelta(hours=1))
        await store.create_event(Event(title="Draft", event_date=NOW + timedelta(days=1)))
        assert await fanout.broadcast_pending_events() == []

    @pytest.mark.asyncio
    async def test_concurrent_claim_is_fenced(self, fanout, store, users):
        await users()
        event = await approved_event(store)
        assert await store.claim_event_broadcast(event.id, NOW, 600) is True

        report = await fanout.broadcast_event(event)
        assert report.claimed is False
        assert await store.list_messages() == []

    @pytest.mark.asyncio
    async def test_resumed_fan_out_skips_recipients_already_enqueued(self, fanout, store, queue, users, clock):
        await users()
        event = await approved_event(store)
        await queue.enqueue("+91u1", MessageKind.EVENT_BROADCAST, "earlier run",
                            EnqueueOptions(metadata={"event_id": event.id}))
        # stale claim from a fan-out that died
        await store.claim_event_broadcast(event.id, clock.now() - timedelta(hours=1), 600)

        report = await fanout.broadcast_event(event)
        assert report.already_enqueued == 1
        assert report.enqueued == 1
        assert sorted(m.recipient for m in await store.list_messages()) == ["+91u1", "+91u3"]

    @pytest.mark.asyncio
    async def test_enqueue_failures_do_not_abort(self, fanout, store, queue, users):
        await users()
        event = await approved_event(store)
        real_insert = store.insert

        async def flaky_insert(msg):
            if msg.recipient == "+91u1":
                raise QueueStoreUnavailable("insert")
            return await real_insert(msg)

        with patch.object(store, "insert", side_effect=flaky_insert):
            report = await fanout.broadcast_event(event)

        assert report.errors == 1
        assert report.enqueued == 1
        assert report.completed is True
        assert [m.recipient for m in await store.list_messages()] == ["+91u3"]
        assert (await store.get_event(event.id)).broadcast_sent is True

    @pytest.mark.asyncio
    async def test_long_fan_out_refreshes_its_claim(self, store, queue, users, clock):
        await users()
        event = await approved_event(store, target_audience=[])
        fanout = BroadcastFanOut(store, queue, clock=clock, claim_stale_seconds=600, claim_refresh_every=1)
        real_insert = store.insert
        rival_claims = []

        async def slow_insert(msg):
            clock.advance(seconds=400)
            rival_claims.append(await store.claim_event_broadcast(event.id, clock.now(), 600))
            return await real_insert(msg)

        with patch.object(store, "insert", side_effect=slow_insert):
            report = await fanout.broadcast_event(event)

        assert report.completed is True
        assert report.enqueued == 3
        assert rival_claims == [False, False, False]

    @pytest.mark.asyncio
    async def test_fan_out_stops_when_claim_taken_over(self, store, queue, users, clock):
        await users()
        event = await approved_event(store, target_audience=[])
        fanout = BroadcastFanOut(store, queue, clock=clock, claim_stale_seconds=600, claim_refresh_every=1)
        real_insert = store.insert

        async def insert_then_lose_claim(msg):
            stored = await real_insert(msg)
            await store.claim_event_broadcast(event.id, clock.now() + timedelta(seconds=700), 600)
            return stored

        with patch.object(store, "insert", side_effect=insert_then_lose_claim):
            report = await fanout.broadcast_event(event)

        assert report.enqueued == 1
        assert report.completed is False
        assert len(await store.list_messages()) == 1
        assert (await store.get_event(event.id)).broadcast_sent is False

    @pytest.mark.asyncio
    async def test_fan_out_respects_quiet_window(self, fanout, store, users, clock, add_window):
        await users()
        await add_window(1, "09:00", "17:00")
        clock.set(NOW + timedelta(hours=8))
        await approved_event(store)
        await fanout.broadcast_pending_events()
        queued = await store.list_messages(status=MessageStatus.PENDING)
        assert {m.scheduled_for for m in queued} == {datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)}


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_and_broadcast(self, fanout, store, users):
        await users()
        event = await store.create_event(Event(title="Sports Day", event_date=NOW + timedelta(days=1),
                                               target_audience=["Sports"]))
        approved, report = await fanout.approve_and_broadcast(event.id)
        assert approved.status == EventStatus.APPROVED
        assert report.enqueued == 1
        assert [m.recipient for m in await store.list_messages()] == ["+91u3"]

    @pytest.mark.asyncio
    async def test_past_event_is_approved_without_broadcast(self, fanout, store, users):
        await users()
        event = await store.create_event(Event(title="Old", event_date=NOW - timedelta(days=1)))
        approved, report = await fanout.approve_and_broadcast(event.id)
        assert approved.status == EventStatus.APPROVED
        assert report is None

    @pytest.mark.asyncio
    async def test_missing_event(self, fanout):
        with pytest.raises(EventNotFound):
            await fanout.approve_and_broadcast(404)


class TestPoller:
    @pytest.mark.asyncio
    async def test_poller_runs_passes(self, fanout, store, users):
        await users()
        await approved_event(store)
        poller = BroadcastPoller(fanout, interval_seconds=0.01)
        await poller.start()
        try:
            for _ in range(50):
                if poller.passes:
                    break
                await asyncio.sleep(0.01)
        finally:
            await poller.stop()
        assert poller.passes >= 1
        assert len(await store.list_messages()) == 2
