"""
Pipeline — wires every component together and routes work to it.

Two entry points:
  handle_object_event(event)  — object-store notifications (ingest)
  handle(message)             — decoded queue messages

Queue payloads are decoded once, at the boundary (``handle_job``), and
routed by their concrete type.
"""
from __future__ import annotations

import time
import structlog
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from channels.base import InMemoryGateway, MessagingGateway
from channels.twilio_sms import TwilioSmsGateway
from config.secrets import SecretProvider, create_secret_provider
from config.settings import Settings
from database.store_base import BaseCallStore
from database.store_factory import create_store
from ingest.dedup import DuplicateResolver, Resolution
from ingest.handler import IngestHandler
from job_queue.message_queue import MessageQueue, QueueJob, create_message_queue
from models.queue import (
    ActivateUser, AuthCode, PageRequest, PhoneIssue, QueueMessage, SiteStatus,
    TranscribeResult, TwilioText, decode_queue_message,
)
from models.schemas import ObjectEvent
from notify.composer import PageComposer
from notify.dispatcher import NotificationDispatcher
from notify.oncall import OnCallResolver, ShiftFeed
from notify.recipients import PhoneCategoryResolver, RecipientResolver
from notify.texts import AccountTexts
from storage.blob_store import BaseBlobStore, create_blob_store
from transcription.consumer import TranscriptionResultConsumer
from transcription.dispatcher import TranscriptionDispatcher
from transcription.service import SpeechToTextService, create_transcription_service
from utils.fanout import run_all
from utils.metrics import MetricsPublisher
from utils.strings import MonotonicMillis

logger = structlog.get_logger()


@dataclass
class Pipeline:
    settings: Settings
    store: BaseCallStore
    blobs: BaseBlobStore
    queue: MessageQueue
    gateway: MessagingGateway
    stt: SpeechToTextService
    metrics: MetricsPublisher
    ingest: IngestHandler
    transcriptions: TranscriptionResultConsumer
    notifications: NotificationDispatcher
    texts: AccountTexts

    async def handle_object_event(self, event: ObjectEvent) -> Optional[Resolution]:
        return await self.ingest.handle_event(event)

    async def handle_job(self, job: QueueJob) -> Any:
        message = decode_queue_message(job.payload)
        logger.info("queue_message_received", job_id=job.job_id, action=message.action,
                    receive_count=job.receive_count)
        return await self.handle(message)

    async def handle(self, message: QueueMessage) -> Any:
        match message:
            case PageRequest():
                return await self.notifications.send_page(
                    message.channel, message.object_key,
                    duration_seconds=message.duration_seconds,
                    is_test=message.is_test,
                )
            case TranscribeResult():
                return await self.transcriptions.handle(message)
            case TwilioText():
                return await self.texts.relay_text(message)
            case PhoneIssue():
                return await self.texts.report_phone_issue(message)
            case ActivateUser():
                return await self.texts.activate_user(message)
            case AuthCode():
                return await self.texts.send_auth_code(message)
            case SiteStatus():
                return await self.update_sites(message)
            case _:
                raise TypeError(f"Unhandled queue message {type(message).__name__}")

    async def update_sites(self, message: SiteStatus) -> None:
        result = await run_all({
            f"site:{site_id}": self.store.update_site(site_id, {
                attr: values for attr, values in site.items() if isinstance(values, dict)
            })
            for site_id, site in message.sites.items()
        })
        result.raise_for_errors("site_status")

    async def startup(self) -> None:
        await self.store.open()
        await self.queue.connect()

    async def shutdown(self) -> None:
        await self.gateway.shutdown()
        await self.queue.close()
        await self.store.close()


def build_pipeline(
    settings: Settings,
    store: Optional[BaseCallStore] = None,
    blobs: Optional[BaseBlobStore] = None,
    queue: Optional[MessageQueue] = None,
    gateway: Optional[MessagingGateway] = None,
    stt: Optional[SpeechToTextService] = None,
    secrets: Optional[SecretProvider] = None,
    metrics: Optional[MetricsPublisher] = None,
    shift_blobs: Optional[BaseBlobStore] = None,
    clock: Callable[[], float] = time.time,
) -> Pipeline:
    """Assemble a Pipeline; anything not injected is created from ``settings``."""
    store = store or create_store(settings.database, echo=settings.debug)
    blobs = blobs or create_blob_store(settings.storage)
    queue = queue or create_message_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "retry_backoff_base": settings.queue.retry_backoff_base,
    })
    secrets = secrets or create_secret_provider(settings.twilio)
    metrics = metrics or MetricsPublisher(
        namespace=settings.metrics.namespace,
        use_cloudwatch=settings.metrics.use_cloudwatch,
        aws_region=settings.metrics.region,
    )
    stt = stt or create_transcription_service(settings.transcription)

    if gateway is None:
        if settings.twilio.gateway == "twilio":
            gateway = TwilioSmsGateway(
                secrets,
                status_callback_base=settings.twilio.status_callback_base,
                rate_per_second=settings.twilio.rate_per_second,
            )
        else:
            gateway = InMemoryGateway()

    if shift_blobs is None:
        if settings.shifts.bucket and settings.shifts.bucket != settings.storage.bucket:
            shift_blobs = create_blob_store(replace(settings.storage, bucket=settings.shifts.bucket))
        else:
            shift_blobs = blobs

    ids = MonotonicMillis(clock)
    channels = settings.paging_channels

    resolver = DuplicateResolver(store, blobs, settings.dedup, settings.redirect, metrics, clock)
    transcriber = TranscriptionDispatcher(stt, blobs, channels, ids)
    notifications = NotificationDispatcher(
        store,
        gateway,
        RecipientResolver(store, settings.test_recipient_phone),
        PhoneCategoryResolver(settings.twilio, secrets),
        PageComposer(channels, settings.link_base_url, settings.timezone),
        OnCallResolver(ShiftFeed(shift_blobs, settings.shifts.key, settings.shifts.cache_ttl_s),
                       channels),
        metrics,
        ids,
        clock,
    )

    pipeline = Pipeline(
        settings=settings,
        store=store,
        blobs=blobs,
        queue=queue,
        gateway=gateway,
        stt=stt,
        metrics=metrics,
        ingest=IngestHandler(store, blobs, resolver, transcriber, queue, settings,
                             metrics, ids, clock),
        transcriptions=TranscriptionResultConsumer(store, stt, notifications,
                                                   settings.redirect, metrics, clock),
        notifications=notifications,
        texts=AccountTexts(store, notifications, settings.departments, channels, clock),
    )
    logger.info("pipeline_built",
                store=type(store).__name__,
                queue=type(queue).__name__,
                gateway=type(gateway).__name__,
                transcription=type(stt).__name__)
    return pipeline
