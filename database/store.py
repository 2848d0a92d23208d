"""
SqlQueueStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Claiming uses SELECT … FOR UPDATE SKIP LOCKED where the dialect renders it
(PostgreSQL, MySQL 8); SQLite serialises writers on its own and simply
drops the clause. The claim also stamps a short lease on every row so a
second dispatcher skips it after the claiming transaction commits.

All timestamps are written in UTC. SQLite hands DateTime(timezone=True)
columns back naive, so every value read is re-tagged as UTC.
"""
from __future__ import annotations

import json
import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import select, update, delete, func, or_, and_, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    MessageQueueRow, TimeWindowRow, UserRow, UserInterestRow, EventRow,
)
from database.session import get_session
from database.store_base import BaseQueueStore
from models.errors import QueueStoreUnavailable
from models.schemas import (
    Event, EventStatus, MessageKind, MessageStatus, QueuedMessage,
    TimeWindow, UserProfile,
)

logger = structlog.get_logger()

_PENDING = MessageStatus.PENDING.value


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _event_id(metadata: Optional[dict]) -> Optional[int]:
    value = (metadata or {}).get("event_id")
    return value if isinstance(value, int) and not isinstance(value, bool) else None


@asynccontextmanager
async def _store_session(operation: str) -> AsyncGenerator[AsyncSession, None]:
    """get_session() with driver/database errors mapped to QueueStoreUnavailable."""
    try:
        async with get_session() as db:
            yield db
    except (SQLAlchemyError, OSError) as e:
        logger.error("queue_store_error", operation=operation, error=str(e))
        raise QueueStoreUnavailable(operation, e) from e


class SqlQueueStore(BaseQueueStore):
    """
    Persistent queue store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Message queue ──────────────────────────────────────

    async def insert(self, msg: QueuedMessage) -> QueuedMessage:
        async with _store_session("insert") as db:
            row = MessageQueueRow(
                recipient=msg.recipient,
                kind=msg.kind.value,
                priority=msg.priority,
                payload_text=msg.payload_text,
                media_url=msg.media_url,
                scheduled_for=_utc(msg.scheduled_for),
                attempts=msg.attempts,
                max_attempts=msg.max_attempts,
                status=msg.status.value,
                metadata_=msg.metadata or {},
                event_id=_event_id(msg.metadata),
                created_at=_utc(msg.created_at) or datetime.now(timezone.utc),
            )
            db.add(row)
            await db.flush()
            return self._row_to_message(row)

    async def claim_ready_batch(
        self, now: datetime, limit: int = 50, lease_seconds: int = 120,
    ) -> list[QueuedMessage]:
        now = _utc(now)
        token = uuid.uuid4().hex
        async with _store_session("claim_ready_batch") as db:
            stmt = (
                select(MessageQueueRow)
                .where(and_(
                    MessageQueueRow.status == _PENDING,
                    or_(MessageQueueRow.scheduled_for.is_(None),
                        MessageQueueRow.scheduled_for <= now),
                    MessageQueueRow.attempts < MessageQueueRow.max_attempts,
                    or_(MessageQueueRow.claimed_until.is_(None),
                        MessageQueueRow.claimed_until <= now),
                ))
                .order_by(
                    MessageQueueRow.priority.asc(),
                    MessageQueueRow.created_at.asc(),
                    MessageQueueRow.id.asc(),
                )
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = (await db.execute(stmt)).scalars().all()
            lease_end = now + timedelta(seconds=lease_seconds)
            for row in rows:
                row.claim_token = token
                row.claimed_until = lease_end
            await db.flush()
            return [self._row_to_message(r).model_copy(update={"claim_token": token}) for r in rows]

    async def renew_claim(self, message_id: int, token: str, now: datetime, lease_seconds: int) -> bool:
        now = _utc(now)
        async with _store_session("renew_claim") as db:
            result = await db.execute(
                update(MessageQueueRow)
                .where(and_(
                    MessageQueueRow.id == message_id,
                    MessageQueueRow.claim_token == token,
                    MessageQueueRow.status == _PENDING,
                ))
                .values(claimed_until=now + timedelta(seconds=lease_seconds))
            )
            return result.rowcount == 1

    async def count_sent_recent(self, recipient: str, since: datetime) -> int:
        async with _store_session("count_sent_recent") as db:
            stmt = select(func.count(MessageQueueRow.id)).where(and_(
                MessageQueueRow.recipient == recipient,
                MessageQueueRow.status == MessageStatus.SENT.value,
                MessageQueueRow.sent_at > _utc(since),
            ))
            return int((await db.execute(stmt)).scalar() or 0)

    async def reschedule(self, message_id: int, new_scheduled_for: Optional[datetime]) -> None:
        async with _store_session("reschedule") as db:
            await db.execute(
                update(MessageQueueRow)
                .where(and_(MessageQueueRow.id == message_id, MessageQueueRow.status == _PENDING))
                .values(scheduled_for=_utc(new_scheduled_for), claim_token=None, claimed_until=None)
            )

    async def mark_sent(self, message_id: int, at: datetime, attempts: Optional[int] = None) -> bool:
        values = {
            "status": MessageStatus.SENT.value, "sent_at": _utc(at),
            "claim_token": None, "claimed_until": None,
        }
        if attempts is not None:
            values["attempts"] = case(
                (MessageQueueRow.max_attempts < attempts, MessageQueueRow.max_attempts),
                else_=attempts,
            )
        async with _store_session("mark_sent") as db:
            result = await db.execute(
                update(MessageQueueRow)
                .where(and_(MessageQueueRow.id == message_id, MessageQueueRow.status == _PENDING))
                .values(**values)
            )
            return result.rowcount == 1

    async def record_attempt(
        self, message_id: int, new_attempts: int, new_status: MessageStatus,
        error: Optional[str] = None,
    ) -> None:
        if new_status not in (MessageStatus.PENDING, MessageStatus.FAILED):
            raise ValueError(f"record_attempt cannot move a message to {new_status.value}")
        async with _store_session("record_attempt") as db:
            await db.execute(
                update(MessageQueueRow)
                .where(and_(
                    MessageQueueRow.id == message_id,
                    MessageQueueRow.status == _PENDING,
                    MessageQueueRow.max_attempts >= new_attempts,
                ))
                .values(attempts=new_attempts, status=new_status.value, last_error=error,
                        claim_token=None, claimed_until=None)
            )

    async def cancel(self, recipient: str, kind: Optional[MessageKind] = None) -> int:
        conditions = [MessageQueueRow.recipient == recipient, MessageQueueRow.status == _PENDING]
        if kind is not None:
            conditions.append(MessageQueueRow.kind == kind.value)
        async with _store_session("cancel") as db:
            result = await db.execute(
                update(MessageQueueRow)
                .where(and_(*conditions))
                .values(status=MessageStatus.CANCELLED.value, claim_token=None, claimed_until=None)
            )
            return result.rowcount or 0

    async def get_message(self, message_id: int) -> Optional[QueuedMessage]:
        async with _store_session("get_message") as db:
            row = await db.get(MessageQueueRow, message_id)
            return self._row_to_message(row) if row else None

    async def list_messages(
        self, status: Optional[MessageStatus] = None,
        recipient: Optional[str] = None, limit: int = 50,
    ) -> list[QueuedMessage]:
        stmt = select(MessageQueueRow)
        if status is not None:
            stmt = stmt.where(MessageQueueRow.status == status.value)
        if recipient is not None:
            stmt = stmt.where(MessageQueueRow.recipient == recipient)
        stmt = stmt.order_by(MessageQueueRow.created_at.desc(), MessageQueueRow.id.desc()).limit(limit)
        async with _store_session("list_messages") as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in rows]

    async def status_counts(self, since: datetime) -> dict[MessageStatus, int]:
        async with _store_session("status_counts") as db:
            stmt = (
                select(MessageQueueRow.status, func.count(MessageQueueRow.id))
                .where(MessageQueueRow.created_at > _utc(since))
                .group_by(MessageQueueRow.status)
            )
            rows = (await db.execute(stmt)).all()
            return {MessageStatus(status): int(count) for status, count in rows}

    # ── Time windows ───────────────────────────────────────

    async def list_time_windows(self, active_only: bool = True) -> list[dict]:
        stmt = select(TimeWindowRow)
        if active_only:
            stmt = stmt.where(TimeWindowRow.active.is_(True))
        stmt = stmt.order_by(TimeWindowRow.day_of_week, TimeWindowRow.start_time)
        async with _store_session("list_time_windows") as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [
                {
                    "id": r.id, "day_of_week": r.day_of_week,
                    "start_time": r.start_time, "end_time": r.end_time,
                    "kind": r.kind, "active": r.active,
                    "description": r.description or "",
                }
                for r in rows
            ]

    async def add_time_window(self, window: TimeWindow) -> TimeWindow:
        async with _store_session("add_time_window") as db:
            row = TimeWindowRow(
                day_of_week=window.day_of_week,
                start_time=window.start_time,
                end_time=window.end_time,
                kind=window.kind.value,
                active=window.active,
                description=window.description,
            )
            db.add(row)
            await db.flush()
            return window.model_copy(update={"id": row.id})

    async def set_time_window_active(self, window_id: int, active: bool) -> bool:
        async with _store_session("set_time_window_active") as db:
            result = await db.execute(
                update(TimeWindowRow).where(TimeWindowRow.id == window_id).values(active=active)
            )
            return result.rowcount == 1

    # ── Users & interests ──────────────────────────────────

    async def upsert_user(self, profile: UserProfile) -> UserProfile:
        async with _store_session("upsert_user") as db:
            existing = await db.get(UserRow, profile.recipient)
            if existing:
                existing.name = profile.name
                existing.subscribed = profile.subscribed
                existing.onboarding_completed = profile.onboarding_completed
            else:
                db.add(UserRow(
                    recipient=profile.recipient,
                    name=profile.name,
                    subscribed=profile.subscribed,
                    onboarding_completed=profile.onboarding_completed,
                ))
            await db.flush()
            await self._replace_interests(db, profile.recipient, profile.interests)
            return profile

    async def set_user_interests(self, recipient: str, interests: list[str]) -> None:
        async with _store_session("set_user_interests") as db:
            await self._replace_interests(db, recipient, interests)

    @staticmethod
    async def _replace_interests(db: AsyncSession, recipient: str, interests: list[str]) -> None:
        await db.execute(delete(UserInterestRow).where(UserInterestRow.recipient == recipient))
        for interest in dict.fromkeys(interests):
            db.add(UserInterestRow(recipient=recipient, interest=interest))

    async def get_broadcast_recipients(self, target_audience: list[str]) -> list[str]:
        stmt = select(UserRow.recipient).where(and_(
            UserRow.subscribed.is_(True),
            UserRow.onboarding_completed.is_(True),
        ))
        if target_audience:
            stmt = (
                stmt.join(UserInterestRow, UserInterestRow.recipient == UserRow.recipient)
                .where(UserInterestRow.interest.in_(list(target_audience)))
                .distinct()
            )
        stmt = stmt.order_by(UserRow.recipient)
        async with _store_session("get_broadcast_recipients") as db:
            return list((await db.execute(stmt)).scalars().all())

    # ── Events ─────────────────────────────────────────────

    async def create_event(self, event: Event) -> Event:
        async with _store_session("create_event") as db:
            row = EventRow(
                title=event.title,
                description=event.description,
                category=event.category,
                location=event.location,
                event_date=_utc(event.event_date),
                poster_url=event.poster_url,
                status=event.status.value,
                target_audience=list(event.target_audience),
                registration_required=event.registration_required,
                registration_link=event.registration_link,
                broadcast_sent=event.broadcast_sent,
            )
            db.add(row)
            await db.flush()
            return self._row_to_event(row)

    async def get_event(self, event_id: int) -> Optional[Event]:
        async with _store_session("get_event") as db:
            row = await db.get(EventRow, event_id)
            return self._row_to_event(row) if row else None

    async def approve_event(self, event_id: int) -> Optional[Event]:
        async with _store_session("approve_event") as db:
            row = await db.get(EventRow, event_id)
            if row is None:
                return None
            row.status = EventStatus.APPROVED.value
            await db.flush()
            return self._row_to_event(row)

    async def get_events_ready_for_broadcast(self, now: datetime) -> list[Event]:
        stmt = (
            select(EventRow)
            .where(and_(
                EventRow.status == EventStatus.APPROVED.value,
                EventRow.broadcast_sent.is_(False),
                EventRow.event_date > _utc(now),
            ))
            .order_by(EventRow.created_at.asc(), EventRow.id.asc())
        )
        async with _store_session("get_events_ready_for_broadcast") as db:
            return [self._row_to_event(r) for r in (await db.execute(stmt)).scalars().all()]

    async def claim_event_broadcast(self, event_id: int, now: datetime, stale_after_seconds: int) -> bool:
        now = _utc(now)
        stale_before = now - timedelta(seconds=stale_after_seconds)
        async with _store_session("claim_event_broadcast") as db:
            result = await db.execute(
                update(EventRow)
                .where(and_(
                    EventRow.id == event_id,
                    EventRow.broadcast_sent.is_(False),
                    or_(EventRow.broadcast_claimed_at.is_(None),
                        EventRow.broadcast_claimed_at < stale_before),
                ))
                .values(broadcast_claimed_at=now)
            )
            return result.rowcount == 1

    async def refresh_event_broadcast_claim(self, event_id: int, claimed_at: datetime, now: datetime) -> bool:
        async with _store_session("refresh_event_broadcast_claim") as db:
            result = await db.execute(
                update(EventRow)
                .where(and_(
                    EventRow.id == event_id,
                    EventRow.broadcast_sent.is_(False),
                    EventRow.broadcast_claimed_at == _utc(claimed_at),
                ))
                .values(broadcast_claimed_at=_utc(now))
            )
            return result.rowcount == 1

    async def mark_event_broadcast_sent(self, event_id: int) -> None:
        async with _store_session("mark_event_broadcast_sent") as db:
            await db.execute(
                update(EventRow).where(EventRow.id == event_id).values(broadcast_sent=True)
            )

    async def recipients_with_event_message(self, event_id: int) -> set[str]:
        stmt = select(MessageQueueRow.recipient).where(and_(
            MessageQueueRow.event_id == event_id,
            MessageQueueRow.kind == MessageKind.EVENT_BROADCAST.value,
        )).distinct()
        async with _store_session("recipients_with_event_message") as db:
            return set((await db.execute(stmt)).scalars().all())

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: MessageQueueRow) -> QueuedMessage:
        metadata: Any = row.metadata_ or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return QueuedMessage(
            id=row.id,
            recipient=row.recipient,
            kind=MessageKind(row.kind),
            priority=row.priority,
            payload_text=row.payload_text,
            media_url=row.media_url,
            scheduled_for=_utc(row.scheduled_for),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            status=MessageStatus(row.status),
            created_at=_utc(row.created_at),
            sent_at=_utc(row.sent_at),
            last_error=row.last_error,
            metadata=metadata,
        )

    @staticmethod
    def _row_to_event(row: EventRow) -> Event:
        audience = row.target_audience or []
        if isinstance(audience, str):
            audience = json.loads(audience)
        return Event(
            id=row.id,
            title=row.title,
            description=row.description or "",
            category=row.category or "",
            location=row.location or "",
            event_date=_utc(row.event_date),
            poster_url=row.poster_url,
            status=EventStatus(row.status),
            target_audience=list(audience),
            registration_required=bool(row.registration_required),
            registration_link=row.registration_link,
            broadcast_sent=bool(row.broadcast_sent),
            created_at=_utc(row.created_at),
        )
