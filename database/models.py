"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Integer autoincrement id on message_queue so ids are monotonic.
  - Wall-clock HH:MM for time windows is stored as TIME, the zone lives
    in configuration, not in the rows.
"""
from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Time, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Outbound message queue
# ──────────────────────────────────────────────────────────────

class MessageQueueRow(Base):
    __tablename__ = "message_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    payload_text: Mapped[str] = mapped_column(Text, nullable=False)
    media_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Dispatcher lease: set on claim, cleared by every state mutation
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    # metadata.event_id, denormalised on insert
    event_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_message_queue_status_scheduled", "status", "scheduled_for"),
        Index("ix_message_queue_recipient_sent", "recipient", "sent_at"),
        Index("ix_message_queue_created", "created_at"),
        Index("ix_message_queue_event_recipient", "event_id", "recipient"),
    )


# ──────────────────────────────────────────────────────────────
#  Weekly send calendar
# ──────────────────────────────────────────────────────────────

class TimeWindowRow(Base):
    __tablename__ = "time_windows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)     # 0=Sunday
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    kind: Mapped[str] = mapped_column(String(8), nullable=False, default="SEND")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str] = mapped_column(String(256), default="")

    __table_args__ = (
        Index("ix_time_windows_day_active", "day_of_week", "active"),
    )


# ──────────────────────────────────────────────────────────────
#  Users & interests (owned by the conversation layer, read here)
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    recipient: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class UserInterestRow(Base):
    __tablename__ = "user_interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient: Mapped[str] = mapped_column(String(128), ForeignKey("users.recipient"), nullable=False)
    interest: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("recipient", "interest", name="uq_user_interest"),
        Index("ix_user_interests_interest", "interest"),
    )


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(64), default="")
    location: Mapped[str] = mapped_column(String(256), default="")
    event_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    poster_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    target_audience: Mapped[Any] = mapped_column(JSON, default=list)
    registration_required: Mapped[bool] = mapped_column(Boolean, default=False)
    registration_link: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    broadcast_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    broadcast_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_events_broadcast", "status", "broadcast_sent", "event_date"),
    )
