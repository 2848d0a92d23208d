"""
Event Broadcast Fan-Out — one approved event becomes N queued messages.

Flow per event:
    claim (conditional, fenced)      → bail if another fan-out holds it
    target set from user interests   → minus recipients already enqueued
    render once                      → same text for every recipient
    enqueue EVENT_BROADCAST each     → failures counted, never abort;
                                       claim refreshed every claim_refresh_every,
                                       stop if it was taken over
    mark broadcast_sent

A fan-out that dies half-way keeps its claim until claim_stale_seconds
passes; the next run skips recipients who already hold a message for
the event, so nobody gets the announcement twice.

Runs on demand (approve_and_broadcast, POST /events/broadcast) and from
BroadcastPoller inside the FastAPI lifespan.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from core.calendar import Clock, SystemClock
from database.store_base import BaseQueueStore
from models.errors import EventNotFound, QueueError
from models.schemas import EnqueueOptions, Event, KIND_PRIORITY, MessageKind

logger = structlog.get_logger()

_TEMPLATES = (
    "🎉 *{category} Alert!*\n\n📅 *{title}*\n{description}\n\n📍 *Where:* {location}\n⏰ *When:* {date}\n\n{registration}",
    "✨ *New {category} Event!*\n\n🎯 *{title}*\n{description}\n\n📍 *Location:* {location}\n📅 *Date:* {date}\n\n{registration}",
    "🚀 *{category} Opportunity!*\n\n💫 *{title}*\n{description}\n\n📍 *Venue:* {location}\n⏰ *Time:* {date}\n\n{registration}",
)


def render_event_message(event: Event, tz: Union[str, ZoneInfo] = "UTC") -> str:
    """Announcement text; the template is picked by event id so a re-run renders identically."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    if event.registration_required:
        registration = f"🎫 *Registration:* {event.registration_link or 'Contact organizer'}"
    else:
        registration = "🎫 *Registration:* Not required"

    template = _TEMPLATES[(event.id or 0) % len(_TEMPLATES)]
    return template.format(
        category=event.category or "Campus",
        title=event.title,
        description=event.description,
        location=event.location or "TBA",
        date=event.event_date.astimezone(zone).strftime("%a %d %b %Y, %I:%M %p"),
        registration=registration,
    ).strip()


@dataclass
class BroadcastReport:
    event_id: int
    claimed: bool = False
    targets: int = 0
    already_enqueued: int = 0
    enqueued: int = 0
    errors: int = 0
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BroadcastFanOut:

    def __init__(
        self,
        store: BaseQueueStore,
        queue,                       # type: job_queue.message_queue.OutboundQueue
        clock: Optional[Clock] = None,
        tz: Union[str, ZoneInfo] = "UTC",
        claim_stale_seconds: int = 600,
        claim_refresh_every: int = 50,
    ):
        self.store = store
        self.queue = queue
        self.clock = clock or SystemClock()
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.claim_stale_seconds = claim_stale_seconds
        self.claim_refresh_every = max(1, claim_refresh_every)

    async def broadcast_pending_events(self, now: Optional[datetime] = None) -> list[BroadcastReport]:
        now = now or self.clock.now()
        events = await self.store.get_events_ready_for_broadcast(now)
        if events:
            logger.info("broadcast_pass_started", events=len(events))
        return [await self.broadcast_event(event, now) for event in events]

    async def broadcast_event(self, event: Event, now: Optional[datetime] = None) -> BroadcastReport:
        now = now or self.clock.now()
        report = BroadcastReport(event_id=event.id)

        if not await self.store.claim_event_broadcast(event.id, now, self.claim_stale_seconds):
            logger.info("broadcast_claim_lost", event_id=event.id)
            return report
        report.claimed = True

        targets = await self.store.get_broadcast_recipients(event.target_audience)
        done = await self.store.recipients_with_event_message(event.id)
        report.targets = len(targets)
        report.already_enqueued = sum(1 for r in targets if r in done)

        text = render_event_message(event, self.tz)
        options = EnqueueOptions(
            priority=KIND_PRIORITY[MessageKind.EVENT_BROADCAST],
            media_url=event.poster_url,
            metadata={"event_id": event.id},
        )

        claimed_at = now
        pending = [r for r in targets if r not in done]
        for i, recipient in enumerate(pending):
            if i and i % self.claim_refresh_every == 0:
                refreshed_at = self.clock.now()
                if not await self.store.refresh_event_broadcast_claim(event.id, claimed_at, refreshed_at):
                    logger.warning("broadcast_claim_lost_midway", event_id=event.id,
                                   enqueued=report.enqueued, remaining=len(pending) - i)
                    return report
                claimed_at = refreshed_at
            try:
                await self.queue.enqueue(recipient, MessageKind.EVENT_BROADCAST, text, options)
                report.enqueued += 1
            except QueueError as e:
                report.errors += 1
                logger.error("broadcast_enqueue_failed", event_id=event.id,
                             recipient=recipient, error=str(e))

        await self.store.mark_event_broadcast_sent(event.id)
        report.completed = True
        logger.info("event_broadcast_queued", event_id=event.id, title=event.title,
                    targets=report.targets, enqueued=report.enqueued,
                    already_enqueued=report.already_enqueued, errors=report.errors)
        return report

    async def approve_and_broadcast(self, event_id: int) -> tuple[Event, Optional[BroadcastReport]]:
        """
        Approve an event and fan it out straight away.

        Raises:
            EventNotFound: no event with this id.
        """
        event = await self.store.approve_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        logger.info("event_approved", event_id=event_id, title=event.title)

        now = self.clock.now()
        if event.broadcast_sent or event.event_date <= now:
            return event, None
        return event, await self.broadcast_event(event, now)


class BroadcastPoller:
    """
    Periodic fan-out of newly approved events.

    settings.yaml:
        broadcast:
          enabled: true
          interval_seconds: 60
    """

    def __init__(self, fanout: BroadcastFanOut, interval_seconds: float = 60):
        self.fanout = fanout
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.passes = 0

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="broadcast_poller")
        logger.info("broadcast_poller_started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("broadcast_poller_stopped", passes=self.passes)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.fanout.broadcast_pending_events()
                self.passes += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("broadcast_pass_error", error=str(e))

            await asyncio.sleep(self.interval_seconds)
