"""
Abstract Queue Store — Interface for all storage backends.

Implementations:
  - SqlQueueStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryQueueStore (dict-based, single-process, no persistence)

Every state mutation on message_queue is guarded by status = PENDING,
so replaying it with the same inputs after a crash changes nothing.
Backend failures surface as models.errors.QueueStoreUnavailable.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    Event, MessageKind, MessageStatus, QueuedMessage, TimeWindow, UserProfile,
)


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    # ── Message queue ─────────────────────────────────────────

    @abstractmethod
    async def insert(self, msg: QueuedMessage) -> QueuedMessage:
        """Persist a new PENDING message; returns it with id and created_at set."""
        ...

    @abstractmethod
    async def claim_ready_batch(
        self, now: datetime, limit: int = 50, lease_seconds: int = 120,
    ) -> list[QueuedMessage]:
        """
        Lease up to `limit` ready messages ordered by (priority, created_at).
        Leased rows are invisible to other claimers until the lease expires
        or a mutation below releases it.
        """
        ...

    @abstractmethod
    async def renew_claim(self, message_id: int, token: str, now: datetime, lease_seconds: int) -> bool:
        """
        Push the lease of a claimed PENDING row to now + lease_seconds.
        Returns False when the row is no longer PENDING or another claim
        has taken it over; the caller must then leave the row alone.
        """
        ...

    @abstractmethod
    async def count_sent_recent(self, recipient: str, since: datetime) -> int:
        ...

    @abstractmethod
    async def reschedule(self, message_id: int, new_scheduled_for: Optional[datetime]) -> None:
        ...

    @abstractmethod
    async def mark_sent(self, message_id: int, at: datetime, attempts: Optional[int] = None) -> bool:
        """
        PENDING → SENT. `attempts`, when given, counts the successful call.
        Returns False when the row was not PENDING.
        """
        ...

    @abstractmethod
    async def record_attempt(
        self, message_id: int, new_attempts: int, new_status: MessageStatus,
        error: Optional[str] = None,
    ) -> None:
        """PENDING → PENDING (retry) or PENDING → FAILED."""
        ...

    @abstractmethod
    async def cancel(self, recipient: str, kind: Optional[MessageKind] = None) -> int:
        """PENDING → CANCELLED for a recipient; returns rows affected."""
        ...

    @abstractmethod
    async def get_message(self, message_id: int) -> Optional[QueuedMessage]:
        ...

    @abstractmethod
    async def list_messages(
        self, status: Optional[MessageStatus] = None,
        recipient: Optional[str] = None, limit: int = 50,
    ) -> list[QueuedMessage]:
        ...

    @abstractmethod
    async def status_counts(self, since: datetime) -> dict[MessageStatus, int]:
        """Counts per status for messages created after `since`."""
        ...

    # ── Time windows ──────────────────────────────────────────

    @abstractmethod
    async def list_time_windows(self, active_only: bool = True) -> list[dict]:
        """Raw window rows; validation happens in the calendar loader."""
        ...

    @abstractmethod
    async def add_time_window(self, window: TimeWindow) -> TimeWindow:
        ...

    @abstractmethod
    async def set_time_window_active(self, window_id: int, active: bool) -> bool:
        ...

    # ── Users & interests ─────────────────────────────────────

    @abstractmethod
    async def upsert_user(self, profile: UserProfile) -> UserProfile:
        ...

    @abstractmethod
    async def set_user_interests(self, recipient: str, interests: list[str]) -> None:
        ...

    @abstractmethod
    async def get_broadcast_recipients(self, target_audience: list[str]) -> list[str]:
        """
        Subscribed, onboarded users whose interests intersect the audience.
        An empty audience targets every subscribed, onboarded user.
        """
        ...

    # ── Events ────────────────────────────────────────────────

    @abstractmethod
    async def create_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def get_event(self, event_id: int) -> Optional[Event]:
        ...

    @abstractmethod
    async def approve_event(self, event_id: int) -> Optional[Event]:
        ...

    @abstractmethod
    async def get_events_ready_for_broadcast(self, now: datetime) -> list[Event]:
        ...

    @abstractmethod
    async def claim_event_broadcast(self, event_id: int, now: datetime, stale_after_seconds: int) -> bool:
        """
        Conditionally fence a fan-out: succeeds only while broadcast_sent is
        false and no other claim younger than stale_after_seconds exists.
        """
        ...

    @abstractmethod
    async def refresh_event_broadcast_claim(self, event_id: int, claimed_at: datetime, now: datetime) -> bool:
        """
        Move a held claim from claimed_at to now. False when the claim was
        taken over or the event is already marked broadcast.
        """
        ...

    @abstractmethod
    async def mark_event_broadcast_sent(self, event_id: int) -> None:
        ...

    @abstractmethod
    async def recipients_with_event_message(self, event_id: int) -> set[str]:
        """Recipients already holding a queued broadcast for this event."""
        ...
