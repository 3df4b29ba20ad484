"""
FastAPI Application — event intake and webhooks.

Provides:
- Object-store notification intake (ingest)
- Transcription-complete and generic queue-message intake
- Twilio delivery status callbacks
- Queue and dead-letter inspection
- The queue consumer, run in the application lifespan
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, Query
from fastapi.responses import JSONResponse

from channels.twilio_sms import TwilioSmsGateway
from config.settings import get_settings
from core.errors import MalformedInputError, PipelineError
from core.pipeline import build_pipeline
from job_queue.consumer import PipelineConsumer
from job_queue.message_queue import Queues
from models.queue import decode_queue_message, encode_queue_message
from models.schemas import ObjectEvent

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
pipeline = build_pipeline(_settings_boot)
message_queue = pipeline.queue

pipeline_consumer = PipelineConsumer(
    pipeline, message_queue,
    concurrency=_settings_boot.queue.consumer_concurrency,
    poll_wait=_settings_boot.queue.poll_wait_s,
    promote_interval=_settings_boot.queue.delayed_promote_interval,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    await pipeline.startup()
    await pipeline_consumer.start_background()

    logger.info("radio_pager_started",
                app=settings.app_name,
                queue_backend=type(message_queue).__name__,
                channels=sorted(settings.paging_channels))
    yield

    await pipeline_consumer.stop()
    await pipeline.shutdown()
    logger.info("radio_pager_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="RadioPager API",
    description="Multi-tower radio recording ingest, transcription and paging",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "gateway": await pipeline.gateway.health_check(),
        "paging_channels": sorted(pipeline.settings.paging_channels),
    }


# ══════════════════════════════════════════════════════════════
#  OBJECT-STORE EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/events/object")
async def object_event(request: Request):
    """
    S3 event notification (``{"Records": [...]}``) or a single ObjectEvent.

    Any failure answers 500 so the event source redelivers the whole event;
    malformed records are rejected with 400 and not retried.
    """
    body = await request.json()
    if "Records" in body:
        events = [ObjectEvent.from_s3_record(r) for r in body["Records"]]
    else:
        events = [ObjectEvent.model_validate(body)]

    handled = []
    for event in events:
        try:
            resolution = await pipeline.handle_object_event(event)
        except MalformedInputError as e:
            logger.warning("object_event_rejected", key=event.object_key, error=str(e))
            raise HTTPException(400, str(e))
        except PipelineError as e:
            logger.error("object_event_failed", key=event.object_key, error=str(e))
            return JSONResponse(status_code=500, content={"error": str(e), "key": event.object_key})
        handled.append({
            "key": event.object_key,
            "type": event.event_type.value,
            "kept": resolution.canonical.object_key if resolution else None,
            "page": resolution.page if resolution else False,
            "transcribe": resolution.transcribe if resolution else False,
        })
    return {"handled": handled}


# ══════════════════════════════════════════════════════════════
#  QUEUE INTAKE
# ══════════════════════════════════════════════════════════════

@app.post("/events/transcribe")
async def transcribe_event(request: Request):
    """Transcription-complete notification from the event bus."""
    body = await request.json()
    try:
        message = decode_queue_message(body)
    except MalformedInputError as e:
        raise HTTPException(400, str(e))
    job = await message_queue.submit(
        encode_queue_message(message),
        max_receive_count=pipeline.settings.queue.max_receive_count,
    )
    return {"job_id": job.job_id, "action": message.action}


@app.post("/events/queue")
async def queue_event(payload: dict[str, Any]):
    try:
        message = decode_queue_message(payload)
    except MalformedInputError as e:
        raise HTTPException(400, str(e))
    job = await message_queue.submit(
        encode_queue_message(message),
        max_receive_count=pipeline.settings.queue.max_receive_count,
    )
    return {"job_id": job.job_id, "action": message.action}


@app.get("/queue/stats")
async def queue_stats():
    return {
        "events_queue_depth": await message_queue.queue_length(Queues.EVENTS),
        "dlq_depth": await message_queue.queue_length(Queues.DLQ),
    }


@app.get("/queue/dlq")
async def dead_letters(count: int = Query(20, ge=1, le=200)):
    jobs = await message_queue.peek(Queues.DLQ, count)
    return {
        "jobs": [
            {
                "job_id": j.job_id,
                "action": j.action,
                "receives": j.receive_count,
                "reason": j.metadata.get("dlq_reason", ""),
                "payload": j.payload,
            }
            for j in jobs
        ],
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — Twilio
# ══════════════════════════════════════════════════════════════

@app.post("/twilio/status/{message_id}")
async def twilio_status_webhook(message_id: int, request: Request):
    """Twilio message status callback (form-encoded)."""
    body = dict(await request.form())
    normalized = TwilioSmsGateway.parse_status_webhook(body)
    await pipeline.notifications.merge_delivery_status(message_id, normalized["status"])
    if normalized.get("error_code"):
        logger.warning("twilio_delivery_error", message_id=message_id,
                       to=normalized["to"], error_code=normalized["error_code"])
    return {"status": "ok"}
