"""
FastAPI Application — Subscription REST API.

Provides:
- POST /api/v1/subscriptions: subscribe the caller to a meetup
- GET  /api/v1/subscriptions: the caller's upcoming subscriptions
- Queue diagnostics (depths, dead letters)
- Lifespan management of the notification worker
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from models.schemas import AdmissionError
from backend.connector import create_meetup_directory
from channels.email_adapter import create_mailer
from core.admission import AdmissionEngine
from database.store_factory import create_store
from job_queue.message_queue import create_message_queue
from job_queue.consumer import NotificationConsumer, DelayedJobPromoter
from notifications.subscription_mail import SubscriptionMail
from utils.logging import configure_logging

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
configure_logging(_settings_boot.logging)

store = create_store({"store_backend": _settings_boot.database.store_backend})
directory = create_meetup_directory(store, _settings_boot.directory)
message_queue = create_message_queue({
    "backend": _settings_boot.queue.backend,
    "redis_url": _settings_boot.queue.redis_url,
    "retry_backoff_base": _settings_boot.queue.retry_backoff_base,
    "enqueue_attempts": _settings_boot.queue.enqueue_attempts,
    "claim_idle_seconds": _settings_boot.queue.claim_idle_seconds,
    "delayed_promote_interval": _settings_boot.queue.delayed_promote_interval,
})
mailer = create_mailer(_settings_boot.mail)
subscription_mail = SubscriptionMail(
    mailer,
    timezone=_settings_boot.timezone,
    default_locale=_settings_boot.default_locale,
)

admission = AdmissionEngine(
    store, directory, message_queue,
    max_attempts=_settings_boot.queue.max_attempts,
)

notification_consumer = NotificationConsumer(
    message_queue,
    consumer_group=_settings_boot.queue.consumer_group,
    concurrency=_settings_boot.queue.consumer_concurrency,
)
notification_consumer.register(SubscriptionMail.key, subscription_mail.handle)

delayed_promoter = DelayedJobPromoter(
    message_queue,
    interval_seconds=_settings_boot.queue.delayed_promote_interval,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        from database.session import init_db
        await init_db()

    await message_queue.connect()
    await notification_consumer.start_background()
    await delayed_promoter.start_background()

    logger.info("meetapp_started",
                store=type(store).__name__,
                queue_backend=type(message_queue).__name__,
                mailer=type(mailer).__name__)
    yield

    await admission.drain()
    await notification_consumer.stop()
    await delayed_promoter.stop()
    await message_queue.close()
    await mailer.close()
    await directory.close()
    await store.close()
    logger.info("meetapp_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Meetapp Subscriptions API",
    description="Meetup subscription admission and organizer notifications",
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


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class SubscribeRequest(BaseModel):
    meetup_id: str


def _require_user(x_user_id: Optional[str]) -> str:
    # Identity comes from the upstream auth layer
    if not x_user_id:
        raise HTTPException(401, "User not authenticated")
    return x_user_id


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "consumer_running": notification_consumer.running,
        "mailer": await mailer.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  SUBSCRIPTIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/subscriptions")
async def subscribe(req: SubscribeRequest, x_user_id: Optional[str] = Header(None)):
    user_id = _require_user(x_user_id)
    result = await admission.subscribe(user_id, req.meetup_id)
    if not result.accepted:
        status = 404 if result.error == AdmissionError.NOT_FOUND else 400
        raise HTTPException(status, result.error.message)
    return result.confirmation.model_dump(mode="json")


@app.get("/api/v1/subscriptions")
async def list_subscriptions(x_user_id: Optional[str] = Header(None)):
    user_id = _require_user(x_user_id)
    rows = await store.list_upcoming(user_id)
    return [
        {
            "id": sub.id,
            "meetup_id": meetup.id,
            "date": meetup.scheduled_at.isoformat(),
            "meetup": {
                "title": meetup.title,
                "location": meetup.location,
                "organizer": meetup.organizer.name if meetup.organizer else "",
            },
            "subscribed_at": sub.created_at.isoformat(),
        }
        for sub, meetup in rows
    ]


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/stats")
async def queue_stats():
    stats = await message_queue.stats()
    stats["consumer_running"] = notification_consumer.running
    stats["processed"] = notification_consumer.processed
    stats["failed"] = notification_consumer.failed
    return stats


@app.get("/api/v1/queue/dead-letters")
async def dead_letters(limit: int = Query(50, ge=1, le=500)) -> list[dict[str, Any]]:
    jobs = await message_queue.dead_letters(limit)
    return [
        {
            "job_id": job.job_id,
            "kind": job.kind,
            "attempts": job.attempt + 1,
            "payload": job.payload,
            "reason": job.metadata.get("dlq_reason", ""),
            "dead_lettered_at": job.metadata.get("dead_lettered_at", ""),
        }
        for job in jobs
    ]


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
