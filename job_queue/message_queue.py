"""
Outbound Queue — the producer-facing side of message delivery.

Producers never talk to the gateway. They enqueue; admission control
fixes scheduled_for at insert time and the dispatcher drains ready rows.

Row lifecycle:
  PENDING ──ok──────────────▶ SENT
     │ ──permanent / cap────▶ FAILED
     │ ──cancel_pending─────▶ CANCELLED
     └──transient / defer──▶ PENDING (attempts or scheduled_for updated)

Usage:
    queue = OutboundQueue(store, admission, dispatcher)
    msg = await queue.enqueue("+9198…", MessageKind.DIRECT_REPLY, "Got it!")
    await queue.cancel_pending("+9198…", MessageKind.EVENT_BROADCAST)
    stats = await queue.stats()
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from core.admission import AdmissionController
from core.calendar import Clock, SystemClock
from database.store_base import BaseQueueStore
from models.errors import AdmissionRejected
from models.schemas import (
    DeferTo, EnqueueOptions, MessageKind, MessageStatus, QueuedMessage, QueueStats, Reject,
)

logger = structlog.get_logger()


class OutboundQueue:

    def __init__(
        self,
        store: BaseQueueStore,
        admission: AdmissionController,
        dispatcher=None,           # type: job_queue.dispatcher.Dispatcher
        clock: Optional[Clock] = None,
        default_max_attempts: int = 3,
        default_priority: int = 5,
        stats_window_hours: int = 24,
    ):
        self.store = store
        self.admission = admission
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.default_max_attempts = default_max_attempts
        self.default_priority = default_priority
        self.stats_window = timedelta(hours=stats_window_hours)

    async def enqueue(
        self,
        recipient: str,
        kind: MessageKind,
        payload_text: str,
        options: Optional[EnqueueOptions] = None,
    ) -> QueuedMessage:
        """
        Admit and durably insert one message.

        Returns the stored row once it is committed.

        Raises:
            AdmissionRejected: the message can never be delivered (blank recipient).
            QueueStoreUnavailable: the insert did not commit.
        """
        options = options or EnqueueOptions()
        now = self.clock.now()

        decision = await self.admission.admit(recipient, kind, now, force_immediate=options.force_immediate)
        if isinstance(decision, Reject):
            logger.warning("enqueue_rejected", recipient=recipient, kind=kind.value, reason=decision.reason)
            raise AdmissionRejected(recipient, decision.reason)
        scheduled_for = decision.at if isinstance(decision, DeferTo) else now

        metadata: dict[str, Any] = dict(options.metadata)
        if options.force_immediate:
            # the dispatcher re-admits on claim and must keep the bypass
            metadata["force_immediate"] = True

        msg = await self.store.insert(QueuedMessage(
            recipient=recipient,
            kind=kind,
            priority=options.priority if options.priority is not None else self.default_priority,
            payload_text=payload_text,
            media_url=options.media_url,
            scheduled_for=scheduled_for,
            max_attempts=self.default_max_attempts,
            created_at=now,
            metadata=metadata,
        ))
        logger.info("message_enqueued", message_id=msg.id, recipient=recipient, kind=kind.value,
                    priority=msg.priority, scheduled_for=scheduled_for.isoformat(),
                    deferred=isinstance(decision, DeferTo))

        if scheduled_for <= now and self.dispatcher is not None:
            self.dispatcher.kick()
        return msg

    async def cancel_pending(self, recipient: str, kind: Optional[MessageKind] = None) -> int:
        """Cancel PENDING rows for a recipient. Rows already claimed by a running cycle may still send."""
        cancelled = await self.store.cancel(recipient, kind)
        logger.info("messages_cancelled", recipient=recipient,
                    kind=kind.value if kind else None, count=cancelled)
        return cancelled

    async def stats(self, now: Optional[datetime] = None) -> QueueStats:
        now = now or self.clock.now()
        counts = await self.store.status_counts(now - self.stats_window)
        return QueueStats(
            pending=counts.get(MessageStatus.PENDING, 0),
            sent=counts.get(MessageStatus.SENT, 0),
            failed=counts.get(MessageStatus.FAILED, 0),
            cancelled=counts.get(MessageStatus.CANCELLED, 0),
            total=sum(counts.values()),
        )

    async def process_now(self) -> dict[str, Any]:
        """Force one dispatcher tick and return its report with fresh stats."""
        if self.dispatcher is None:
            raise RuntimeError("OutboundQueue has no dispatcher attached")
        report = await self.dispatcher.run_cycle()
        stats = await self.stats()
        return {"cycle": report.to_dict(), "stats": stats.model_dump()}
