"""
Admission control — decides whether a message may go out now.

Rules, first match wins:
  0. blank recipient                      → Reject
  1. DIRECT_REPLY or force_immediate      → SendNow
  2. outside every SEND window            → DeferTo(next_send_instant)
  3. recipient over the throttle          → DeferTo(next_window_start)
  otherwise                               → SendNow

An undefined deferral target (no SEND windows) admits immediately.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta

from core.calendar import CalendarProvider
from database.store_base import BaseQueueStore
from models.schemas import Admission, DeferTo, MessageKind, Reject, SendNow

logger = structlog.get_logger()


class AdmissionController:

    def __init__(
        self,
        store: BaseQueueStore,
        calendars: CalendarProvider,
        throttle_window_minutes: int = 20,
        throttle_max_sent: int = 3,
    ):
        self.store = store
        self.calendars = calendars
        self.throttle_window = timedelta(minutes=throttle_window_minutes)
        self.throttle_max_sent = throttle_max_sent

    async def admit(
        self,
        recipient: str,
        kind: MessageKind,
        now: datetime,
        force_immediate: bool = False,
    ) -> Admission:
        if not recipient or not recipient.strip():
            return Reject("blank recipient")

        if kind == MessageKind.DIRECT_REPLY or force_immediate:
            return SendNow()

        calendar = await self.calendars.get_calendar()

        if not calendar.is_send_window(now):
            resume_at = calendar.next_send_instant(now)
            if resume_at is None:
                return SendNow()
            return DeferTo(resume_at, reason="quiet_window")

        sent = await self.store.count_sent_recent(recipient, now - self.throttle_window)
        if sent < self.throttle_max_sent:
            return SendNow()

        resume_at = calendar.next_window_start(now)
        if resume_at is None:
            return SendNow()
        logger.info("recipient_throttled", recipient=recipient, kind=kind.value,
                    sent_recently=sent, resume_at=resume_at.isoformat())
        return DeferTo(resume_at, reason="throttled")
