"""
FastAPI Application — admin and ops surface for the outbound queue.

Provides:
- Queue processing, stats, enqueue, cancel and listing
- Weekly calendar inspection and window management
- Event approval and broadcast fan-out
- Health with gateway breaker and dispatcher state

The dispatcher and the broadcast poller run as background tasks inside
the lifespan. Run with:
    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from channels.base import MessageGateway
from channels.factory import create_gateway
from config.logging import configure_logging
from config.settings import Settings, get_settings
from core.admission import AdmissionController
from core.broadcast import BroadcastFanOut, BroadcastPoller
from core.calendar import CalendarProvider, Clock, SystemClock
from database.session import close_db, init_db
from database.store import SqlQueueStore
from database.store_base import BaseQueueStore
from database.store_factory import create_store
from job_queue.dispatcher import Dispatcher
from job_queue.message_queue import OutboundQueue
from models.errors import AdmissionRejected, EventNotFound, QueueStoreUnavailable
from models.schemas import EnqueueOptions, MessageKind, MessageStatus, TimeWindow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Wiring
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    clock: Clock
    store: BaseQueueStore
    gateway: MessageGateway
    calendars: CalendarProvider
    admission: AdmissionController
    dispatcher: Dispatcher
    queue: OutboundQueue
    fanout: BroadcastFanOut
    poller: Optional[BroadcastPoller] = None


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[BaseQueueStore] = None,
    gateway: Optional[MessageGateway] = None,
    clock: Optional[Clock] = None,
) -> Services:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store or create_store({"store_backend": settings.database.store_backend})
    gateway = gateway or create_gateway(settings.gateway)
    q = settings.queue
    per_message = settings.gateway.timeout_seconds + q.send_delay_seconds * 2 + 1
    if q.claim_lease_seconds <= per_message:
        logger.warning("claim_lease_shorter_than_send", lease_s=q.claim_lease_seconds,
                       per_message_s=per_message)

    calendars = CalendarProvider(store, settings.timezone, q.calendar_cache_ttl_seconds)
    admission = AdmissionController(store, calendars, q.throttle_window_minutes, q.throttle_max_sent)
    dispatcher = Dispatcher(
        store, gateway, admission, clock=clock,
        batch_size=q.batch_size,
        lease_seconds=q.claim_lease_seconds,
        send_delay_seconds=q.send_delay_seconds,
        tick_interval_seconds=q.tick_interval_seconds,
    )
    queue = OutboundQueue(
        store, admission, dispatcher, clock=clock,
        default_max_attempts=q.default_max_attempts,
        default_priority=q.default_priority,
        stats_window_hours=q.stats_window_hours,
    )
    fanout = BroadcastFanOut(store, queue, clock=clock, tz=settings.timezone,
                             claim_stale_seconds=settings.broadcast.claim_stale_seconds,
                             claim_refresh_every=settings.broadcast.claim_refresh_every)
    poller = BroadcastPoller(fanout, settings.broadcast.interval_seconds) if settings.broadcast.enabled else None

    return Services(settings, clock, store, gateway, calendars, admission,
                    dispatcher, queue, fanout, poller)


def get_services(request: Request) -> Services:
    return request.app.state.services


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.debug)

    if app.state.services is None:
        app.state.services = build_services(settings)
    services: Services = app.state.services

    if isinstance(services.store, SqlQueueStore):
        await init_db()
    services.dispatcher.start_background()
    if services.poller:
        await services.poller.start()

    logger.info("omsd_started",
                app=settings.app_name,
                timezone=settings.timezone,
                store=type(services.store).__name__,
                gateway=services.gateway.name)
    yield

    if services.poller:
        await services.poller.stop()
    await services.dispatcher.stop()
    await services.gateway.shutdown()
    if isinstance(services.store, SqlQueueStore):
        await close_db()
    logger.info("omsd_stopped")


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    recipient: str
    kind: MessageKind
    payload_text: str
    priority: Optional[int] = None
    media_url: Optional[str] = None
    metadata: dict[str, Any] = {}
    force_immediate: bool = False


class CancelRequest(BaseModel):
    recipient: str
    kind: Optional[MessageKind] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

router = APIRouter()


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "gateway": await services.gateway.health_check(),
        "dispatcher": services.dispatcher.status(),
    }


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@router.post("/queue/process")
async def process_queue(services: Services = Depends(get_services)):
    return await services.queue.process_now()


@router.get("/queue/stats")
async def queue_stats(services: Services = Depends(get_services)):
    stats = await services.queue.stats()
    return stats.model_dump()


@router.post("/queue/messages", status_code=201)
async def enqueue_message(req: EnqueueRequest, services: Services = Depends(get_services)):
    msg = await services.queue.enqueue(
        req.recipient, req.kind, req.payload_text,
        EnqueueOptions(
            priority=req.priority,
            media_url=req.media_url,
            metadata=req.metadata,
            force_immediate=req.force_immediate,
        ),
    )
    return msg.model_dump(mode="json")


@router.post("/queue/cancel")
async def cancel_messages(req: CancelRequest, services: Services = Depends(get_services)):
    cancelled = await services.queue.cancel_pending(req.recipient, req.kind)
    return {"recipient": req.recipient, "cancelled": cancelled}


@router.get("/queue/messages")
async def list_messages(
    status: Optional[MessageStatus] = None,
    recipient: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    messages = await services.store.list_messages(status=status, recipient=recipient, limit=limit)
    return {"messages": [m.model_dump(mode="json") for m in messages]}


# ══════════════════════════════════════════════════════════════
#  CALENDAR
# ══════════════════════════════════════════════════════════════

@router.get("/calendar")
async def get_calendar(services: Services = Depends(get_services)):
    calendar = await services.calendars.get_calendar()
    now = services.clock.now()
    next_send = calendar.next_send_instant(now)
    return {
        "timezone": services.settings.timezone,
        "now": now.isoformat(),
        "windows": [w.model_dump(mode="json") for w in calendar.windows],
        "is_send_window": calendar.is_send_window(now),
        "next_send_instant": next_send.isoformat() if next_send else None,
    }


@router.post("/calendar/windows", status_code=201)
async def add_time_window(window: TimeWindow, services: Services = Depends(get_services)):
    stored = await services.store.add_time_window(window)
    services.calendars.invalidate()
    logger.info("time_window_added", window_id=stored.id, day_of_week=stored.day_of_week,
                kind=stored.kind.value)
    return stored.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════

@router.post("/events/{event_id}/approve")
async def approve_event(event_id: int, services: Services = Depends(get_services)):
    event, report = await services.fanout.approve_and_broadcast(event_id)
    return {
        "event": event.model_dump(mode="json"),
        "broadcast": report.to_dict() if report else None,
    }


@router.post("/events/broadcast")
async def broadcast_events(services: Services = Depends(get_services)):
    reports = await services.fanout.broadcast_pending_events()
    return {"events": [r.to_dict() for r in reports]}


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

async def _store_unavailable(request: Request, exc: QueueStoreUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc), "operation": exc.operation})


async def _admission_rejected(request: Request, exc: AdmissionRejected):
    return JSONResponse(status_code=422, content={"detail": str(exc), "reason": exc.reason})


async def _event_not_found(request: Request, exc: EventNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Services are built inside the lifespan unless passed in (tests)."""
    application = FastAPI(
        title="CampusNotifier Outbound Queue",
        description="Scheduled, throttled WhatsApp delivery and event broadcast fan-out",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.services = services
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(QueueStoreUnavailable, _store_unavailable)
    application.add_exception_handler(AdmissionRejected, _admission_rejected)
    application.add_exception_handler(EventNotFound, _event_not_found)
    application.include_router(router)
    return application


app = create_app()
