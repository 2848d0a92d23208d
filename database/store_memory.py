"""
InMemoryQueueStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlQueueStore
  - Atomic per call: no method awaits between reading and mutating state
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Optional

from database.store_base import BaseQueueStore
from models.schemas import (
    Event, EventStatus, MessageKind, MessageStatus, QueuedMessage,
    TimeWindow, UserProfile,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryQueueStore(BaseQueueStore):
    """
    Same semantics as SqlQueueStore, including claim leases.
    Models are copied in and out so callers never share state with the store.
    """

    def __init__(self):
        self._messages: dict[int, QueuedMessage] = {}
        self._leases: dict[int, tuple[str, datetime]] = {}   # id → (token, claimed_until)
        self._windows: dict[int, TimeWindow] = {}
        self._users: dict[str, UserProfile] = {}
        self._events: dict[int, Event] = {}
        self._event_claims: dict[int, datetime] = {}         # event_id → claimed_at

        self._message_ids = count(1)
        self._window_ids = count(1)
        self._event_ids = count(1)
        logger.info("inmemory_store_initialized")

    # ── Message queue ──────────────────────────────────────

    async def insert(self, msg: QueuedMessage) -> QueuedMessage:
        message_id = next(self._message_ids)
        stored = msg.model_copy(deep=True, update={
            "id": message_id,
            "created_at": msg.created_at or _utcnow(),
        })
        self._messages[message_id] = stored
        return stored.model_copy(deep=True)

    async def claim_ready_batch(
        self, now: datetime, limit: int = 50, lease_seconds: int = 120,
    ) -> list[QueuedMessage]:
        ready = [
            m for m in self._messages.values()
            if m.is_ready(now) and not self._leased(m.id, now)
        ]
        ready.sort(key=lambda m: (m.priority, m.created_at, m.id))
        batch = ready[:limit]

        token = uuid.uuid4().hex
        lease_end = now + timedelta(seconds=lease_seconds)
        for m in batch:
            self._leases[m.id] = (token, lease_end)
        return [m.model_copy(deep=True, update={"claim_token": token}) for m in batch]

    async def renew_claim(self, message_id: int, token: str, now: datetime, lease_seconds: int) -> bool:
        lease = self._leases.get(message_id)
        if self._pending(message_id) is None or lease is None or lease[0] != token:
            return False
        self._leases[message_id] = (token, now + timedelta(seconds=lease_seconds))
        return True

    def _leased(self, message_id: int, now: datetime) -> bool:
        lease = self._leases.get(message_id)
        return lease is not None and lease[1] > now

    def _pending(self, message_id: int) -> Optional[QueuedMessage]:
        m = self._messages.get(message_id)
        if m is None or m.status != MessageStatus.PENDING:
            return None
        return m

    async def count_sent_recent(self, recipient: str, since: datetime) -> int:
        return sum(
            1 for m in self._messages.values()
            if m.recipient == recipient
            and m.status == MessageStatus.SENT
            and m.sent_at is not None and m.sent_at > since
        )

    async def reschedule(self, message_id: int, new_scheduled_for: Optional[datetime]) -> None:
        m = self._pending(message_id)
        if m is None:
            return
        m.scheduled_for = new_scheduled_for
        self._leases.pop(message_id, None)

    async def mark_sent(self, message_id: int, at: datetime, attempts: Optional[int] = None) -> bool:
        m = self._pending(message_id)
        if m is None:
            return False
        m.status = MessageStatus.SENT
        m.sent_at = at
        if attempts is not None:
            m.attempts = min(attempts, m.max_attempts)
        self._leases.pop(message_id, None)
        return True

    async def record_attempt(
        self, message_id: int, new_attempts: int, new_status: MessageStatus,
        error: Optional[str] = None,
    ) -> None:
        if new_status not in (MessageStatus.PENDING, MessageStatus.FAILED):
            raise ValueError(f"record_attempt cannot move a message to {new_status.value}")
        m = self._pending(message_id)
        if m is None or new_attempts > m.max_attempts:
            return
        m.attempts = new_attempts
        m.status = new_status
        m.last_error = error
        self._leases.pop(message_id, None)

    async def cancel(self, recipient: str, kind: Optional[MessageKind] = None) -> int:
        cancelled = 0
        for m in self._messages.values():
            if m.recipient != recipient or m.status != MessageStatus.PENDING:
                continue
            if kind is not None and m.kind != kind:
                continue
            m.status = MessageStatus.CANCELLED
            self._leases.pop(m.id, None)
            cancelled += 1
        return cancelled

    async def get_message(self, message_id: int) -> Optional[QueuedMessage]:
        m = self._messages.get(message_id)
        return m.model_copy(deep=True) if m else None

    async def list_messages(
        self, status: Optional[MessageStatus] = None,
        recipient: Optional[str] = None, limit: int = 50,
    ) -> list[QueuedMessage]:
        found = [
            m for m in self._messages.values()
            if (status is None or m.status == status)
            and (recipient is None or m.recipient == recipient)
        ]
        found.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return [m.model_copy(deep=True) for m in found[:limit]]

    async def status_counts(self, since: datetime) -> dict[MessageStatus, int]:
        counts: dict[MessageStatus, int] = {}
        for m in self._messages.values():
            if m.created_at > since:
                counts[m.status] = counts.get(m.status, 0) + 1
        return counts

    # ── Time windows ───────────────────────────────────────

    async def list_time_windows(self, active_only: bool = True) -> list[dict]:
        windows = [w for w in self._windows.values() if w.active or not active_only]
        windows.sort(key=lambda w: (w.day_of_week, w.start_time))
        return [
            {**w.model_dump(), "kind": w.kind.value}
            for w in windows
        ]

    async def add_time_window(self, window: TimeWindow) -> TimeWindow:
        stored = window.model_copy(update={"id": next(self._window_ids)})
        self._windows[stored.id] = stored
        return stored.model_copy()

    async def set_time_window_active(self, window_id: int, active: bool) -> bool:
        w = self._windows.get(window_id)
        if w is None:
            return False
        self._windows[window_id] = w.model_copy(update={"active": active})
        return True

    # ── Users & interests ──────────────────────────────────

    async def upsert_user(self, profile: UserProfile) -> UserProfile:
        stored = profile.model_copy(deep=True, update={
            "interests": list(dict.fromkeys(profile.interests)),
        })
        self._users[profile.recipient] = stored
        return stored.model_copy(deep=True)

    async def set_user_interests(self, recipient: str, interests: list[str]) -> None:
        user = self._users.get(recipient)
        if user is not None:
            user.interests = list(dict.fromkeys(interests))

    async def get_broadcast_recipients(self, target_audience: list[str]) -> list[str]:
        audience = set(target_audience)
        return sorted(
            u.recipient for u in self._users.values()
            if u.subscribed and u.onboarding_completed
            and (not audience or audience.intersection(u.interests))
        )

    # ── Events ─────────────────────────────────────────────

    async def create_event(self, event: Event) -> Event:
        stored = event.model_copy(deep=True, update={
            "id": next(self._event_ids),
            "created_at": event.created_at or _utcnow(),
        })
        self._events[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_event(self, event_id: int) -> Optional[Event]:
        e = self._events.get(event_id)
        return e.model_copy(deep=True) if e else None

    async def approve_event(self, event_id: int) -> Optional[Event]:
        e = self._events.get(event_id)
        if e is None:
            return None
        e.status = EventStatus.APPROVED
        return e.model_copy(deep=True)

    async def get_events_ready_for_broadcast(self, now: datetime) -> list[Event]:
        ready = [
            e for e in self._events.values()
            if e.status == EventStatus.APPROVED and not e.broadcast_sent and e.event_date > now
        ]
        ready.sort(key=lambda e: (e.created_at, e.id))
        return [e.model_copy(deep=True) for e in ready]

    async def claim_event_broadcast(self, event_id: int, now: datetime, stale_after_seconds: int) -> bool:
        e = self._events.get(event_id)
        if e is None or e.broadcast_sent:
            return False
        claimed_at = self._event_claims.get(event_id)
        if claimed_at is not None and claimed_at >= now - timedelta(seconds=stale_after_seconds):
            return False
        self._event_claims[event_id] = now
        return True

    async def refresh_event_broadcast_claim(self, event_id: int, claimed_at: datetime, now: datetime) -> bool:
        e = self._events.get(event_id)
        if e is None or e.broadcast_sent or self._event_claims.get(event_id) != claimed_at:
            return False
        self._event_claims[event_id] = now
        return True

    async def mark_event_broadcast_sent(self, event_id: int) -> None:
        e = self._events.get(event_id)
        if e is not None:
            e.broadcast_sent = True

    async def recipients_with_event_message(self, event_id: int) -> set[str]:
        return {
            m.recipient for m in self._messages.values()
            if m.kind == MessageKind.EVENT_BROADCAST and m.metadata.get("event_id") == event_id
        }
