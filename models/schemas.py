"""
Core data models for the outbound message queue.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageKind(str, Enum):
    DIRECT_REPLY = "DIRECT_REPLY"
    EVENT_BROADCAST = "EVENT_BROADCAST"
    MATCH_NOTIFICATION = "MATCH_NOTIFICATION"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


class WindowKind(str, Enum):
    SEND = "SEND"
    QUIET = "QUIET"


class EventStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class DeliveryOutcome(str, Enum):
    OK = "ok"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


# Canonical priorities: lower is more urgent
KIND_PRIORITY = {
    MessageKind.DIRECT_REPLY: 1,
    MessageKind.MATCH_NOTIFICATION: 2,
    MessageKind.SYSTEM_UPDATE: 5,
    MessageKind.EVENT_BROADCAST: 6,
}
DEFAULT_PRIORITY = 5


# ──────────────────────────────────────────────────────────────
#  Queued message: one row of the outbound queue
# ──────────────────────────────────────────────────────────────

class QueuedMessage(BaseModel):
    id: Optional[int] = None                  # assigned by the store on insert
    recipient: str
    kind: MessageKind
    priority: int = DEFAULT_PRIORITY
    payload_text: str
    media_url: Optional[str] = None
    scheduled_for: Optional[datetime] = None  # None → eligible immediately
    attempts: int = 0
    max_attempts: int = 3
    status: MessageStatus = MessageStatus.PENDING
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    metadata: dict[str, Any] = {}
    claim_token: Optional[str] = Field(default=None, exclude=True)  # set on claimed copies only

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_ready(self, now: datetime) -> bool:
        return (
            self.status == MessageStatus.PENDING
            and self.attempts < self.max_attempts
            and (self.scheduled_for is None or self.scheduled_for <= now)
        )


class EnqueueOptions(BaseModel):
    """Producer-side knobs for a single enqueue."""
    priority: Optional[int] = None
    media_url: Optional[str] = None
    metadata: dict[str, Any] = {}
    force_immediate: bool = False


class QueueStats(BaseModel):
    pending: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


# ──────────────────────────────────────────────────────────────
#  Time windows: the weekly send calendar
# ──────────────────────────────────────────────────────────────

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(:[0-5]\d)?$")


class TimeWindow(BaseModel):
    """
    One weekly window. day_of_week follows 0=Sunday … 6=Saturday and the
    times are wall-clock in the configured calendar timezone.
    Windows never cross midnight; split such periods into two rows.
    """
    id: Optional[int] = None
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    kind: WindowKind = WindowKind.SEND
    active: bool = True
    description: str = ""

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_hhmm(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not _HHMM.match(value.strip()):
                raise ValueError(f"expected HH:MM, got {value!r}")
            return time.fromisoformat(value.strip())
        return value

    @model_validator(mode="after")
    def _no_midnight_crossing(self) -> "TimeWindow":
        if self.start_time >= self.end_time:
            raise ValueError(
                f"start_time {self.start_time:%H:%M} must be before end_time {self.end_time:%H:%M}"
            )
        return self

    def contains(self, t: time) -> bool:
        return self.start_time <= t < self.end_time


# ──────────────────────────────────────────────────────────────
#  Users and events: read by the broadcast fan-out
# ──────────────────────────────────────────────────────────────

class UserProfile(BaseModel):
    recipient: str                            # gateway address, e.g. +9198…
    name: str = ""
    subscribed: bool = True
    onboarding_completed: bool = False
    interests: list[str] = []


class Event(BaseModel):
    id: Optional[int] = None
    title: str
    description: str = ""
    category: str = ""
    location: str = ""
    event_date: datetime
    poster_url: Optional[str] = None
    status: EventStatus = EventStatus.PENDING
    target_audience: list[str] = []           # empty → all onboarded users
    registration_required: bool = False
    registration_link: Optional[str] = None
    broadcast_sent: bool = False
    created_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Admission decisions
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SendNow:
    pass


@dataclass(frozen=True)
class DeferTo:
    at: datetime
    reason: str = ""


@dataclass(frozen=True)
class Reject:
    reason: str


Admission = Union[SendNow, DeferTo, Reject]


# ──────────────────────────────────────────────────────────────
#  Gateway result
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayResult:
    outcome: DeliveryOutcome
    error: str = ""
    provider_message_id: str = ""

    @classmethod
    def ok(cls, provider_message_id: str = "") -> "GatewayResult":
        return cls(DeliveryOutcome.OK, provider_message_id=provider_message_id)

    @classmethod
    def transient(cls, error: str) -> "GatewayResult":
        return cls(DeliveryOutcome.TRANSIENT_ERROR, error=error)

    @classmethod
    def permanent(cls, error: str) -> "GatewayResult":
        return cls(DeliveryOutcome.PERMANENT_ERROR, error=error)

    @property
    def is_ok(self) -> bool:
        return self.outcome == DeliveryOutcome.OK
