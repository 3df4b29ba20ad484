"""Starts transcription jobs for recordings that owe a transcript."""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import PagingChannelConfig
from models.schemas import CallRecord, TranscriptionJob
from storage.blob_store import BaseBlobStore
from transcription.service import SpeechToTextService
from utils.strings import MonotonicMillis

logger = structlog.get_logger()

# Job tags, read back by the result consumer
TAG_CHANNEL = "Channel"
TAG_OBJECT_KEY = "ObjectKey"
TAG_FILE = "File"
TAG_PAGE_ELIGIBLE = "PageEligible"
TAG_COST_CENTER = "CostCenter"


def job_name_for(channel: int, millis: int) -> str:
    return f"{channel}-{millis}"


class TranscriptionDispatcher:

    def __init__(
        self,
        service: SpeechToTextService,
        blobs: BaseBlobStore,
        paging_channels: Optional[dict[int, PagingChannelConfig]] = None,
        ids: Optional[MonotonicMillis] = None,
    ):
        self.service = service
        self.blobs = blobs
        self.paging_channels = paging_channels or {}
        self.ids = ids or MonotonicMillis()

    def tags_for(self, record: CallRecord) -> dict[str, str]:
        tags = {
            TAG_CHANNEL: str(record.channel),
            TAG_OBJECT_KEY: record.object_key,
            TAG_FILE: record.file_name,
            TAG_PAGE_ELIGIBLE: "y" if record.is_page_tone else "n",
        }
        channel_cfg = self.paging_channels.get(record.channel)
        if channel_cfg and channel_cfg.cost_center:
            tags[TAG_COST_CENTER] = channel_cfg.cost_center
        return tags

    async def start(self, record: CallRecord) -> TranscriptionJob:
        """Submit ``record`` for transcription; does not wait for completion."""
        job_name = job_name_for(record.channel, self.ids.next())
        job = await self.service.start_job(
            job_name,
            self.blobs.uri_for(record.object_key),
            self.tags_for(record),
        )
        logger.info("transcription_requested", job_name=job_name,
                    channel=record.channel, key=record.object_key,
                    page_eligible=record.is_page_tone)
        return job
