"""
Dispatcher — drains ready messages from the queue store to the gateway.

One cycle (tick):
  1. claim up to batch_size ready messages, priority then FIFO
  2. per message, in claim order:
       re-admit     → DeferTo: reschedule and move on
                    → Reject:  FAILED
       send         → media when media_url is set, text otherwise
       ok           → SENT
       transient    → attempts+1, FAILED once the cap is reached
       permanent    → attempts+1, FAILED
  3. pace gateway calls through a token bucket

Before each message the row's lease is renewed under the claim token, so a
long cycle keeps its later rows; a row whose claim was taken over after the
lease lapsed is skipped. The lease must outlast one message: pacing plus
one gateway call.

A store failure ends the cycle early and leaves unprocessed rows to their
claim lease; nothing is ever marked terminal because the store failed.
Any other error is confined to the message that raised it.
Delivery is at-least-once: a send whose mark_sent did not commit is
repeated once the lease expires.

Usage:
    dispatcher = Dispatcher(store, gateway, admission)
    report = await dispatcher.run_cycle()     # one tick
    dispatcher.start_background()             # tick every tick_interval_seconds
    dispatcher.kick()                         # tick now
    await dispatcher.stop()
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from channels.base import MessageGateway, TokenBucketRateLimiter
from core.admission import AdmissionController
from core.calendar import Clock, SystemClock
from database.store_base import BaseQueueStore
from models.errors import QueueStoreUnavailable
from models.schemas import (
    DeferTo, DeliveryOutcome, GatewayResult, MessageStatus, QueuedMessage, Reject,
)

logger = structlog.get_logger()


@dataclass
class CycleReport:
    claimed: int = 0
    sent: int = 0
    deferred: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0            # claim lost, or no longer PENDING when the outcome was recorded
    aborted: bool = False
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Dispatcher:

    def __init__(
        self,
        store: BaseQueueStore,
        gateway: MessageGateway,
        admission: AdmissionController,
        clock: Optional[Clock] = None,
        batch_size: int = 50,
        lease_seconds: int = 120,
        send_delay_seconds: float = 1.0,
        tick_interval_seconds: float = 5.0,
    ):
        self.store = store
        self.gateway = gateway
        self.admission = admission
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.send_delay_seconds = send_delay_seconds
        self.tick_interval_seconds = tick_interval_seconds

        self._pacer = TokenBucketRateLimiter.for_delay(send_delay_seconds)
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.cycles_run = 0
        self.last_report: Optional[CycleReport] = None

    # ── Cycle ─────────────────────────────────────────────────

    async def run_cycle(self) -> CycleReport:
        """Run one tick. Never raises; problems are reported and logged."""
        async with self._cycle_lock:
            started = time.monotonic()
            report = CycleReport()
            try:
                await self._cycle(report)
            except Exception as e:
                report.aborted = True
                report.errors.append(str(e))
                logger.exception("dispatch_cycle_crashed", error=str(e))
            report.duration_ms = round((time.monotonic() - started) * 1000, 1)

            self.cycles_run += 1
            self.last_report = report
            if report.claimed or report.aborted:
                logger.info("dispatch_cycle_complete", **{k: v for k, v in report.to_dict().items() if k != "errors"})
            return report

    async def _cycle(self, report: CycleReport) -> None:
        try:
            batch = await self.store.claim_ready_batch(
                self.clock.now(), limit=self.batch_size, lease_seconds=self.lease_seconds,
            )
        except QueueStoreUnavailable as e:
            report.aborted = True
            report.errors.append(str(e))
            logger.error("dispatch_claim_failed", error=str(e))
            return

        report.claimed = len(batch)
        for msg in batch:
            try:
                await self._dispatch_one(msg, report)
            except QueueStoreUnavailable as e:
                report.aborted = True
                report.errors.append(str(e))
                logger.error("dispatch_cycle_aborted", message_id=msg.id, error=str(e))
                return
            except Exception as e:
                report.errors.append(f"message {msg.id}: {e}")
                logger.exception("dispatch_message_error", message_id=msg.id, error=str(e))

    async def _dispatch_one(self, msg: QueuedMessage, report: CycleReport) -> None:
        now = self.clock.now()
        if not await self.store.renew_claim(msg.id, msg.claim_token, now, self.lease_seconds):
            report.skipped += 1
            logger.warning("message_claim_lost", message_id=msg.id)
            return

        decision = await self.admission.admit(
            msg.recipient, msg.kind, now,
            force_immediate=bool(msg.metadata.get("force_immediate")),
        )
        if isinstance(decision, DeferTo):
            await self.store.reschedule(msg.id, decision.at)
            report.deferred += 1
            logger.info("message_deferred", message_id=msg.id, recipient=msg.recipient,
                        reason=decision.reason, until=decision.at.isoformat())
            return
        if isinstance(decision, Reject):
            await self.store.record_attempt(msg.id, msg.attempts, MessageStatus.FAILED,
                                            error=f"rejected: {decision.reason}")
            report.failed += 1
            logger.warning("message_rejected", message_id=msg.id, reason=decision.reason)
            return

        if self._pacer:
            await self._pacer.acquire(timeout=self.send_delay_seconds * 2 + 1)

        result = await self._send(msg)
        attempts = msg.attempts + 1

        if result.outcome == DeliveryOutcome.OK:
            if await self.store.mark_sent(msg.id, self.clock.now(), attempts=attempts):
                report.sent += 1
                logger.info("message_sent", message_id=msg.id, recipient=msg.recipient,
                            kind=msg.kind.value, attempts=attempts,
                            provider_message_id=result.provider_message_id)
            else:
                report.skipped += 1
                logger.warning("message_sent_not_pending", message_id=msg.id)
            return

        permanent = result.outcome == DeliveryOutcome.PERMANENT_ERROR
        exhausted = attempts >= msg.max_attempts
        new_status = MessageStatus.FAILED if permanent or exhausted else MessageStatus.PENDING
        await self.store.record_attempt(msg.id, attempts, new_status, error=result.error)

        if new_status == MessageStatus.FAILED:
            report.failed += 1
            logger.warning("message_failed", message_id=msg.id, recipient=msg.recipient,
                           outcome=result.outcome.value, attempts=attempts, error=result.error)
        else:
            report.retrying += 1
            logger.info("message_retry_scheduled", message_id=msg.id, attempts=attempts,
                        max_attempts=msg.max_attempts, error=result.error)

    async def _send(self, msg: QueuedMessage) -> GatewayResult:
        try:
            if msg.media_url:
                return await self.gateway.send_media(msg.recipient, msg.media_url, msg.payload_text)
            return await self.gateway.send_text(msg.recipient, msg.payload_text)
        except Exception as e:
            logger.warning("gateway_raised", message_id=msg.id, error_type=type(e).__name__, error=str(e))
            return GatewayResult.transient(f"{type(e).__name__}: {e}")

    # ── Background ticking ────────────────────────────────────

    def start_background(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._tick_loop(), name="queue_dispatcher")
            logger.info("dispatcher_started", interval_s=self.tick_interval_seconds,
                        batch_size=self.batch_size)
        return self._task

    def kick(self) -> None:
        """Wake the background loop for an immediate tick; no-op when it is not running."""
        self._wake.set()

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("dispatcher_stopped", cycles=self.cycles_run)

    async def _tick_loop(self) -> None:
        while self._running:
            self._wake.clear()
            await self.run_cycle()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "cycles_run": self.cycles_run,
            "last_cycle": self.last_report.to_dict() if self.last_report else None,
        }
