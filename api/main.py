"""
FastAPI Application — Webhooks + REST API.

Provides:
- WhatsApp webhook (subscription verification, signed inbound payloads)
- Normalized event ingestion for queue-based delivery surfaces
- Follow-up ticker and manual follow-up triggers
- Registration / video signal callbacks
- Contact, conversation and analytics endpoints for the dashboard
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, BackgroundTasks, Body, HTTPException, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from models.schemas import ContactStage, InboundEvent, LeadStatus, utcnow
from context.catalog import ContentCatalog
from context.state_machine import StageMachine
from core.analytics import AnalyticsService, contact_summary
from core.orchestrator import Orchestrator
from core.ticker import FollowUpTicker
from rules.followup import FollowUpScheduler
from channels.whatsapp_adapter import WhatsAppAdapter
from database.store_base import ContactNotFoundError
from database.store_factory import create_store
from job_queue.message_queue import create_message_queue
from job_queue.consumer import CommandConsumer, DelayedJobPromoter
from utils.locks import LockUnavailableError, RedisKeyedLock, create_contact_lock

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

store = create_store(_settings_boot.database)
whatsapp_adapter = WhatsAppAdapter(_settings_boot.whatsapp)
catalog = ContentCatalog(_settings_boot.content)
state_machine = StageMachine(catalog, _settings_boot.pacing, _settings_boot.followup)
scheduler = FollowUpScheduler(catalog, _settings_boot.followup)
message_queue = create_message_queue(_settings_boot.queue)
contact_lock = create_contact_lock(_settings_boot.locks)

orchestrator = Orchestrator(
    store=store,
    channel=whatsapp_adapter,
    state_machine=state_machine,
    scheduler=scheduler,
    queue=message_queue,
    lock=contact_lock,
    deferred_max_attempts=_settings_boot.queue.max_attempts,
)

command_consumer = CommandConsumer(
    orchestrator, message_queue,
    consumer_group=_settings_boot.queue.consumer_group,
    concurrency=_settings_boot.queue.consumer_concurrency,
    max_lateness_seconds=_settings_boot.queue.max_lateness_seconds,
)
delayed_promoter = DelayedJobPromoter(
    message_queue,
    interval_seconds=_settings_boot.queue.delayed_promote_interval,
)

# Across workers only one tick may run; the lock lives as long as one interval
tick_lock = None
if _settings_boot.locks.backend == "redis":
    tick_lock = RedisKeyedLock(
        _settings_boot.locks.redis_url,
        ttl_ms=_settings_boot.followup.tick_interval_seconds * 1000,
        spin_attempts=0,
        namespace="tick",
    )

followup_ticker = FollowUpTicker(orchestrator, _settings_boot.followup, distributed_lock=tick_lock)
analytics = AnalyticsService(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    await store.initialize()
    await message_queue.connect()
    await command_consumer.start_background()
    if settings.queue.backend == "redis":
        await delayed_promoter.start_background()
    if settings.followup.enabled:
        await followup_ticker.start()

    logger.info("leadflow_started",
                store=type(store).__name__,
                queue_backend=type(message_queue).__name__,
                mock_mode=whatsapp_adapter.mock_mode)
    yield

    await followup_ticker.stop()
    await command_consumer.stop()
    await delayed_promoter.stop()
    await message_queue.close()
    await whatsapp_adapter.shutdown()
    await store.close()
    for lock in (contact_lock, tick_lock):
        if isinstance(lock, RedisKeyedLock):
            await lock.close()
    logger.info("leadflow_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="LeadFlow API",
    description="WhatsApp lead funnel with drip follow-ups",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise HTTPException(400, f"Unknown {name}: {value}")


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "store": type(store).__name__,
        "channel": await whatsapp_adapter.health_check(),
        "last_tick": followup_ticker.last_run,
    }


@app.get("/api/v1/config/check")
async def config_check():
    """Which integrations are configured. Never returns secret values."""
    settings = get_settings()
    wa = settings.whatsapp
    return {
        "whatsapp": {
            "phone_number_id": bool(wa.phone_number_id),
            "access_token": bool(wa.access_token),
            "verify_token": bool(wa.verify_token),
            "app_secret": bool(wa.app_secret),
            "api_version": wa.api_version,
            "mock_mode": whatsapp_adapter.mock_mode,
        },
        "store_backend": settings.database.store_backend,
        "queue_backend": settings.queue.backend,
        "lock_backend": settings.locks.backend,
        "followups_enabled": settings.followup.enabled,
        "content": {
            "registration_url": bool(settings.content.registration_url),
            "onboarding_video_url": bool(settings.content.onboarding_video_url),
            "calendly_url": bool(settings.content.calendly_url),
        },
    }


# ══════════════════════════════════════════════════════════════
#  WHATSAPP WEBHOOK
# ══════════════════════════════════════════════════════════════

async def _process_webhook_events(events: list[InboundEvent]):
    for event in events:
        outcome = await orchestrator.handle_inbound(event)
        if not outcome.acknowledged:
            logger.error("webhook_event_not_processed",
                         address=event.address,
                         message_id=event.message_id,
                         status=outcome.status.value,
                         error=outcome.error)


@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    challenge = whatsapp_adapter.verify_webhook(dict(request.query_params))
    if challenge is not None:
        try:
            return JSONResponse(content=int(challenge))
        except ValueError:
            return JSONResponse(content=challenge)
    raise HTTPException(403, "Verification failed")


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not whatsapp_adapter.verify_webhook_signature(body, signature):
        logger.warning("whatsapp_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.warning("whatsapp_payload_unparseable", error=str(e))
        return {"status": "ignored"}

    events = whatsapp_adapter.parse_webhook(payload if isinstance(payload, dict) else {})
    if events:
        background_tasks.add_task(_process_webhook_events, events)
    return {"status": "received", "events": len(events)}


# ══════════════════════════════════════════════════════════════
#  NORMALIZED EVENT INGESTION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events/inbound")
async def ingest_event(payload: dict[str, Any] = Body(...)):
    """
    For delivery surfaces that redeliver until acknowledged: 202 means the
    event is settled (processed, duplicate or dropped as malformed), 503
    asks for redelivery.
    """
    outcome = await orchestrator.ingest(payload)
    return JSONResponse(status_code=202 if outcome.acknowledged else 503,
                        content=outcome.to_dict())


# ══════════════════════════════════════════════════════════════
#  FOLLOW-UPS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/followups/tick")
async def run_followup_tick():
    return await followup_ticker.tick()


@app.post("/api/v1/followups/{address}/send")
async def send_followup(address: str):
    try:
        return await orchestrator.send_manual_follow_up(address)
    except ContactNotFoundError:
        raise HTTPException(404, "Contact not found")
    except LockUnavailableError:
        raise HTTPException(503, "Contact is busy, retry later")


# ══════════════════════════════════════════════════════════════
#  SIGNALS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/contacts/{address}/signals/{signal}")
async def apply_signal(address: str, signal: str):
    """External facts: `registered` (sign-up completed), `video_watched`."""
    try:
        contact = await orchestrator.apply_signal(address, signal)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except ContactNotFoundError:
        raise HTTPException(404, "Contact not found")
    except LockUnavailableError:
        raise HTTPException(503, "Contact is busy, retry later")
    return {"signal": signal, "contact": contact_summary(contact)}


# ══════════════════════════════════════════════════════════════
#  CONTACTS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/contacts")
async def list_contacts(
    status: Optional[str] = None,
    stage: Optional[str] = None,
    city: Optional[str] = None,
    specialty: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    contacts = await store.list_contacts(
        status=_parse_enum(LeadStatus, status, "status"),
        stage=_parse_enum(ContactStage, stage, "stage"),
        city=city,
        specialty=specialty,
        query=q,
        limit=limit,
        offset=offset,
    )
    return {"contacts": [contact_summary(c) for c in contacts], "count": len(contacts)}


@app.get("/api/v1/contacts/recent")
async def recent_contacts(limit: int = Query(20, ge=1, le=200)):
    return {"contacts": await analytics.recent_contacts(limit)}


@app.get("/api/v1/contacts/{address}")
async def get_contact(address: str, interactions: int = Query(50, ge=0, le=500)):
    detail = await analytics.contact_detail(address, interaction_limit=interactions)
    if detail is None:
        raise HTTPException(404, "Contact not found")
    return detail


# ══════════════════════════════════════════════════════════════
#  ANALYTICS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/analytics/dashboard")
async def analytics_dashboard():
    return await analytics.dashboard()


@app.get("/api/v1/analytics/funnel")
async def analytics_funnel():
    return await analytics.funnel()


@app.get("/api/v1/analytics/activity")
async def analytics_activity(days: int = Query(7, ge=1, le=90)):
    return {"days": days, "activity": await analytics.daily_activity(days)}


# ══════════════════════════════════════════════════════════════
#  CONVERSATIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/conversations")
async def list_conversations(
    q: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    if q:
        messages = await store.search_messages(q, limit=limit)
        return {"query": q, "messages": [m.model_dump(mode="json") for m in messages]}
    return {"conversations": await store.list_conversations(limit=limit, offset=offset)}


@app.get("/api/v1/conversations/stats")
async def conversation_stats():
    return await analytics.conversation_stats()


@app.get("/api/v1/conversations/{address}")
async def get_conversation(address: str, limit: int = Query(50, ge=1, le=500)):
    messages = await store.get_messages(address, limit=limit)
    if not messages and await store.get_contact(address) is None:
        raise HTTPException(404, "Conversation not found")
    return {"address": address, "messages": [m.model_dump(mode="json") for m in messages]}


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/stats")
async def queue_stats():
    return {
        "queue": await message_queue.stats(),
        "consumer": dict(command_consumer.stats),
        "last_tick": followup_ticker.last_run,
    }


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
