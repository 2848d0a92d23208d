"""Shared test fixtures for the outbound queue."""
import pytest
from datetime import datetime, timedelta, timezone

from channels.mock_gateway import MockGateway
from core.admission import AdmissionController
from core.calendar import CalendarProvider, FixedClock
from database.store_memory import InMemoryQueueStore
from job_queue.dispatcher import Dispatcher
from job_queue.message_queue import OutboundQueue
from models.schemas import MessageKind, QueuedMessage, TimeWindow, WindowKind

# 2024-01-01 was a Monday
MONDAY = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(MONDAY + timedelta(hours=12))


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


@pytest.fixture
def calendars(store) -> CalendarProvider:
    # ttl 0: every admission sees the current window rows
    return CalendarProvider(store, "UTC", cache_ttl_seconds=0)


@pytest.fixture
def admission(store, calendars) -> AdmissionController:
    return AdmissionController(store, calendars, throttle_window_minutes=20, throttle_max_sent=3)


@pytest.fixture
def dispatcher(store, gateway, admission, clock) -> Dispatcher:
    return Dispatcher(store, gateway, admission, clock=clock,
                      send_delay_seconds=0, tick_interval_seconds=0.05)


@pytest.fixture
def queue(store, admission, dispatcher, clock) -> OutboundQueue:
    return OutboundQueue(store, admission, dispatcher, clock=clock)


@pytest.fixture
def add_window(store):
    """await add_window(day, "09:00", "17:00"); day 0 is Sunday."""
    async def _add(day: int, start: str, end: str, kind: WindowKind = WindowKind.SEND, active: bool = True):
        return await store.add_time_window(TimeWindow(
            day_of_week=day, start_time=start, end_time=end, kind=kind, active=active,
        ))
    return _add


@pytest.fixture
def add_sent(store):
    """await add_sent(recipient, sent_at) inserts a SENT row for throttle tests."""
    async def _add(recipient: str, sent_at: datetime, kind: MessageKind = MessageKind.SYSTEM_UPDATE):
        msg = await store.insert(QueuedMessage(
            recipient=recipient, kind=kind, payload_text="earlier",
            scheduled_for=sent_at, created_at=sent_at,
        ))
        await store.mark_sent(msg.id, sent_at, attempts=1)
        return msg
    return _add
