"""
Transcription results.

A finished job is matched back to its recording through the job tags. The
recording may have been superseded by a longer duplicate while the job ran;
redirects written by the duplicate resolver lead to the survivor. The
transcript is then written to the record and distributed: as the page itself
when no page went out yet, otherwise as a transcript follow-up.
"""
from __future__ import annotations

import re
import time
import structlog
from dataclasses import dataclass
from typing import Callable, Optional

from config.settings import RedirectConfig
from core.errors import MalformedInputError, PipelineError
from database.store_base import BaseCallStore
from models.queue import TranscribeResult
from models.schemas import CallRecord
from notify.composer import NO_VOICES
from notify.dispatcher import NotificationDispatcher
from transcription.dispatcher import TAG_CHANNEL, TAG_OBJECT_KEY, TAG_PAGE_ELIGIBLE
from transcription.service import SpeechToTextService
from utils.metrics import MetricsPublisher

logger = structlog.get_logger()

JOB_NAME_RE = re.compile(r"^\d{3,6}-\d+$")

# Tag names used by jobs started before the current naming
_LEGACY_TAGS = {TAG_CHANNEL: "Talkgroup", TAG_OBJECT_KEY: "FileKey", TAG_PAGE_ELIGIBLE: "IsPage"}


@dataclass
class JobTags:
    channel: int
    object_key: Optional[str]
    page_eligible: bool

    @classmethod
    def parse(cls, job_name: str, tags: dict[str, str]) -> JobTags:
        def tag(name: str) -> Optional[str]:
            return tags.get(name) or tags.get(_LEGACY_TAGS[name])

        raw_channel = tag(TAG_CHANNEL) or job_name.split("-", 1)[0]
        try:
            channel = int(raw_channel)
        except ValueError:
            raise MalformedInputError(f"Invalid channel tag on job {job_name} - {raw_channel}")
        return cls(
            channel=channel,
            object_key=tag(TAG_OBJECT_KEY),
            page_eligible=(tag(TAG_PAGE_ELIGIBLE) or "n").lower() == "y",
        )


class TranscriptionResultConsumer:

    def __init__(
        self,
        store: BaseCallStore,
        service: SpeechToTextService,
        dispatcher: NotificationDispatcher,
        redirect: Optional[RedirectConfig] = None,
        metrics: Optional[MetricsPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.service = service
        self.dispatcher = dispatcher
        self.redirect = redirect or RedirectConfig()
        self.metrics = metrics
        self._clock = clock

    async def follow_redirects(self, object_key: str) -> Optional[CallRecord]:
        """The live record for ``object_key``, following at most ``max_hops`` redirects."""
        key = object_key
        for hop in range(self.redirect.max_hops + 1):
            record = await self.store.find_call_by_key(key)
            if record is not None:
                if hop:
                    logger.info("transcript_redirected", original=object_key, target=key, hops=hop)
                return record
            entry = await self.store.get_redirect(key, self._clock())
            if entry is None:
                return None
            key = entry.new_key
        logger.warning("redirect_chain_exhausted", key=object_key, max_hops=self.redirect.max_hops)
        return None

    async def handle(self, result: TranscribeResult) -> None:
        job_name = result.job_name
        if not JOB_NAME_RE.match(job_name):
            raise MalformedInputError(f"Invalid transcription job name - {job_name}")

        tags = result.tags
        uri = result.transcript_uri
        if not tags or not uri:
            job = await self.service.get_job(job_name)
            tags = tags or job.tags
            uri = uri or job.transcript_uri
        if not uri:
            raise PipelineError(f"Transcription job {job_name} has no transcript", retryable=False)

        info = JobTags.parse(job_name, tags)
        text = (await self.service.fetch_transcript(uri)).strip() or NO_VOICES
        logger.info("transcript_received", job_name=job_name, channel=info.channel,
                    key=info.object_key, page_eligible=info.page_eligible, length=len(text))

        if info.object_key is None:
            if info.page_eligible:
                await self.dispatcher.send_transcript(info.channel, text)
            return

        record = await self.follow_redirects(info.object_key)
        if record is None:
            logger.warning("transcript_target_missing", job_name=job_name, key=info.object_key)
            return

        if record.transcript:
            if len(text) > len(record.transcript):
                await self.store.update_call(record.channel, record.inserted_at, transcript=text)
            logger.info("transcript_already_present", job_name=job_name, key=record.object_key)
            return
        await self.store.update_call(record.channel, record.inserted_at, transcript=text)

        if not info.page_eligible:
            return

        if self.metrics and record.start_time is not None:
            await self.metrics.timing("PageToTranscript", self._clock() - record.start_time,
                                      Channel=str(record.channel))

        if not record.page_sent and await self.store.claim_page_sent(record.channel, record.inserted_at):
            await self.dispatcher.send_page(
                record.channel, record.object_key,
                duration_seconds=record.duration_seconds,
                transcript=text,
            )
        else:
            await self.dispatcher.send_transcript(record.channel, text, object_key=record.object_key)
