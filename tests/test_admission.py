"""
Tests for admission control: bypass, quiet-window deferral, throttle.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from core.admission import AdmissionController
from core.calendar import CalendarProvider
from models.errors import QueueStoreUnavailable
from models.schemas import DeferTo, MessageKind, Reject, SendNow

MONDAY = datetime(2024, 1, 1, tzinfo=timezone.utc)

R = "+919800000001"


class TestBypass:
    @pytest.mark.asyncio
    async def test_direct_reply_ignores_quiet_window(self, admission, add_window):
        await add_window(1, "09:00", "17:00")
        decision = await admission.admit(R, MessageKind.DIRECT_REPLY, MONDAY + timedelta(hours=20))
        assert decision == SendNow()

    @pytest.mark.asyncio
    async def test_force_immediate_ignores_quiet_window(self, admission, add_window):
        await add_window(1, "09:00", "17:00")
        decision = await admission.admit(R, MessageKind.EVENT_BROADCAST, MONDAY + timedelta(hours=20),
                                         force_immediate=True)
        assert decision == SendNow()

    @pytest.mark.asyncio
    async def test_direct_reply_ignores_throttle(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        for minutes in (1, 2, 3, 4):
            await add_sent(R, now - timedelta(minutes=minutes))
        assert await admission.admit(R, MessageKind.DIRECT_REPLY, now) == SendNow()

    @pytest.mark.asyncio
    async def test_blank_recipient_is_rejected(self, admission):
        decision = await admission.admit("  ", MessageKind.DIRECT_REPLY, MONDAY)
        assert isinstance(decision, Reject)


class TestQuietWindow:
    @pytest.mark.asyncio
    async def test_defers_to_next_window(self, admission, add_window):
        await add_window(1, "09:00", "17:00")
        decision = await admission.admit(R, MessageKind.EVENT_BROADCAST, MONDAY + timedelta(hours=20))
        assert decision == DeferTo(MONDAY + timedelta(days=7, hours=9), reason="quiet_window")

    @pytest.mark.asyncio
    async def test_sends_inside_window(self, admission, add_window):
        await add_window(1, "09:00", "17:00")
        decision = await admission.admit(R, MessageKind.SYSTEM_UPDATE, MONDAY + timedelta(hours=9))
        assert decision == SendNow()

    @pytest.mark.asyncio
    async def test_no_windows_fails_open(self, admission):
        decision = await admission.admit(R, MessageKind.EVENT_BROADCAST, MONDAY + timedelta(hours=3))
        assert decision == SendNow()

    @pytest.mark.asyncio
    async def test_unreadable_calendar_fails_open(self):
        store = AsyncMock()
        store.list_time_windows.side_effect = QueueStoreUnavailable("list_time_windows")
        store.count_sent_recent.return_value = 0
        admission = AdmissionController(store, CalendarProvider(store, "UTC"))
        decision = await admission.admit(R, MessageKind.SYSTEM_UPDATE, MONDAY + timedelta(hours=3))
        assert decision == SendNow()


class TestThrottle:
    @pytest.mark.asyncio
    async def test_under_cap_sends(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        await add_sent(R, now - timedelta(minutes=5))
        await add_sent(R, now - timedelta(minutes=10))
        assert await admission.admit(R, MessageKind.SYSTEM_UPDATE, now) == SendNow()

    @pytest.mark.asyncio
    async def test_at_cap_defers_past_current_window(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        for minutes in (1, 5, 19):
            await add_sent(R, now - timedelta(minutes=minutes))

        decision = await admission.admit(R, MessageKind.SYSTEM_UPDATE, now)
        assert isinstance(decision, DeferTo)
        assert decision.reason == "throttled"
        assert decision.at == MONDAY + timedelta(days=7, hours=9)
        assert decision.at > now

    @pytest.mark.asyncio
    async def test_defers_to_next_window_same_day(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "12:00")
        await add_window(1, "14:00", "17:00")
        now = MONDAY + timedelta(hours=11)
        for minutes in (1, 2, 3):
            await add_sent(R, now - timedelta(minutes=minutes))
        decision = await admission.admit(R, MessageKind.MATCH_NOTIFICATION, now)
        assert decision == DeferTo(MONDAY + timedelta(hours=14), reason="throttled")

    @pytest.mark.asyncio
    async def test_old_sends_fall_out_of_window(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        for minutes in (20, 25, 30):
            await add_sent(R, now - timedelta(minutes=minutes))
        assert await admission.admit(R, MessageKind.SYSTEM_UPDATE, now) == SendNow()

    @pytest.mark.asyncio
    async def test_other_recipients_do_not_count(self, admission, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        for minutes in (1, 2, 3):
            await add_sent("+919800000002", now - timedelta(minutes=minutes))
        assert await admission.admit(R, MessageKind.SYSTEM_UPDATE, now) == SendNow()

    @pytest.mark.asyncio
    async def test_pending_rows_do_not_count(self, admission, store, add_window):
        from models.schemas import QueuedMessage
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        for _ in range(5):
            await store.insert(QueuedMessage(recipient=R, kind=MessageKind.EVENT_BROADCAST,
                                             payload_text="x", created_at=now))
        assert await admission.admit(R, MessageKind.SYSTEM_UPDATE, now) == SendNow()

    @pytest.mark.asyncio
    async def test_throttle_without_windows_sends(self, admission, add_sent):
        now = MONDAY + timedelta(hours=12)
        for minutes in (1, 2, 3):
            await add_sent(R, now - timedelta(minutes=minutes))
        assert await admission.admit(R, MessageKind.SYSTEM_UPDATE, now) == SendNow()

    @pytest.mark.asyncio
    async def test_configurable_cap(self, store, calendars, add_window, add_sent):
        await add_window(1, "09:00", "17:00")
        now = MONDAY + timedelta(hours=12)
        await add_sent(R, now - timedelta(minutes=1))
        strict = AdmissionController(store, calendars, throttle_window_minutes=20, throttle_max_sent=1)
        assert isinstance(await strict.admit(R, MessageKind.SYSTEM_UPDATE, now), DeferTo)
