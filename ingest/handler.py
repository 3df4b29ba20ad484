"""
Object-store event intake.

A created object becomes a CallRecord, is checked against recordings of the
same transmission from other towers, and then has its transcription and page
kicked off when the resolution owes them. A removed object deletes its
record. Bookkeeping (metrics, channel statistics) runs alongside and never
fails the event.
"""
from __future__ import annotations

import time
import structlog
from typing import Callable, Optional

from config.settings import Settings
from database.store_base import BaseCallStore
from ingest.dedup import DuplicateResolver, Resolution
from ingest.metadata import parse_call_metadata
from job_queue.message_queue import MessageQueue
from models.queue import PageRequest, encode_queue_message
from models.schemas import CallRecord, ObjectEvent, ObjectEventType
from storage.blob_store import BaseBlobStore, BlobNotFoundError
from transcription.dispatcher import TranscriptionDispatcher
from utils.fanout import run_all
from utils.metrics import MetricsPublisher
from utils.strings import MonotonicMillis

logger = structlog.get_logger()


class IngestHandler:

    def __init__(
        self,
        store: BaseCallStore,
        blobs: BaseBlobStore,
        resolver: DuplicateResolver,
        transcriber: TranscriptionDispatcher,
        queue: MessageQueue,
        settings: Settings,
        metrics: Optional[MetricsPublisher] = None,
        ids: Optional[MonotonicMillis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.blobs = blobs
        self.resolver = resolver
        self.transcriber = transcriber
        self.queue = queue
        self.settings = settings
        self.metrics = metrics
        self.ids = ids or MonotonicMillis(clock)
        self._clock = clock

    def is_multi_receiver(self, object_key: str) -> bool:
        return any(marker in object_key for marker in self.settings.dedup.multi_receiver_markers)

    async def handle_event(self, event: ObjectEvent) -> Optional[Resolution]:
        if event.event_type == ObjectEventType.CREATED:
            return await self.handle_created(event)
        await self.handle_removed(event)
        return None

    # ── Created ───────────────────────────────────────────────

    async def _build_record(self, event: ObjectEvent) -> Optional[CallRecord]:
        metadata = event.metadata
        if not metadata:
            try:
                metadata = await self.blobs.head_object(event.object_key)
            except BlobNotFoundError:
                logger.warning("ingest_object_missing", key=event.object_key)
                return None

        meta = parse_call_metadata(metadata, event.object_key)
        return CallRecord(
            channel=meta.channel,
            inserted_at=self.ids.next(),
            object_key=event.object_key,
            start_time=meta.start_time,
            end_time=meta.end_time,
            duration_seconds=meta.duration_seconds,
            tower_id=meta.tower_id,
            frequency=meta.frequency,
            is_emergency=meta.is_emergency,
            is_page_tone=meta.is_page_tone,
            source_list=meta.source_list,
        )

    async def handle_created(self, event: ObjectEvent) -> Optional[Resolution]:
        existing = await self.store.find_call_by_key(event.object_key)
        if existing is not None:
            # Redelivered event; the record was written by an earlier attempt
            record = existing
            logger.info("ingest_record_reused", key=event.object_key, channel=record.channel)
        else:
            record = await self._build_record(event)
            if record is None:
                await self._call_metric("create")
                return None
            await self.store.put_call(record)
            logger.info("call_ingested", channel=record.channel, key=record.object_key,
                        tower=record.tower_id, duration=record.duration_seconds,
                        tone=record.is_page_tone, emergency=record.is_emergency)

        result = await run_all({
            "resolve_and_dispatch": self._resolve_and_dispatch(record),
            "bookkeeping": self._created_bookkeeping(record, event),
        })
        result.raise_for_errors("ingest_created")
        return result.results["resolve_and_dispatch"]

    async def _resolve_and_dispatch(self, record: CallRecord) -> Resolution:
        if self.is_multi_receiver(record.object_key):
            resolution = await self.resolver.resolve(record)
        else:
            page = False
            if record.is_page_tone:
                page = await self.store.claim_page_sent(record.channel, record.inserted_at)
            resolution = Resolution(
                canonical=record,
                transcribe=record.needs_transcript,
                page=page,
            )

        tasks = {}
        if resolution.transcribe:
            tasks["start_transcription"] = self.transcriber.start(resolution.canonical)
        if resolution.page:
            page = PageRequest(
                channel=resolution.canonical.channel,
                object_key=resolution.canonical.object_key,
                duration_seconds=resolution.canonical.duration_seconds,
            )
            tasks["publish_page"] = self.queue.submit(
                encode_queue_message(page),
                max_receive_count=self.settings.queue.max_receive_count,
            )
        (await run_all(tasks)).raise_for_errors("dispatch")

        logger.info("call_resolved", channel=record.channel, key=record.object_key,
                    kept=resolution.canonical.object_key, duplicates=len(resolution.losers),
                    transcribe=resolution.transcribe, page=resolution.page)
        return resolution

    async def _created_bookkeeping(self, record: CallRecord, event: ObjectEvent) -> None:
        tasks = {"channel_stats": self.store.record_channel_activity(record.channel)}
        if self.metrics:
            tasks["call_metric"] = self.metrics.increment("Call", action="create")
            if record.end_time is not None:
                uploaded_at = event.event_time or self._clock()
                tasks["upload_metric"] = self.metrics.timing(
                    "UploadTime", uploaded_at - record.end_time, Tower=record.tower_id or "unknown",
                )
        result = await run_all(tasks)
        if not result.ok:
            logger.warning("ingest_bookkeeping_failed", key=record.object_key,
                           failed=sorted(result.errors))

    # ── Removed ───────────────────────────────────────────────

    async def handle_removed(self, event: ObjectEvent) -> None:
        result = await run_all({
            "delete_record": self._delete_record(event.object_key),
            "call_metric": self._call_metric("delete"),
        })
        if "delete_record" in result.errors:
            result.raise_for_errors("ingest_removed")

    async def _call_metric(self, action: str) -> None:
        if self.metrics:
            try:
                await self.metrics.increment("Call", action=action)
            except Exception as e:
                logger.warning("ingest_metric_failed", error=str(e))

    async def _delete_record(self, object_key: str) -> None:
        record = await self.store.find_call_by_key(object_key)
        if record is None:
            logger.info("delete_target_not_found", key=object_key)
            return
        await self.store.delete_call(record.channel, record.inserted_at)
        logger.info("call_removed", channel=record.channel, key=object_key)
