"""
Duplicate resolution for recordings captured by several towers at once.

Two windows are used: a loose selection window narrows the store query by
start time, then an exact padded-overlap test runs in memory. Of the true
duplicates the longest recording is kept (latest insert on a tie); the rest
lose their record and their blob. Redirects are written before the losing
records are deleted so a transcription result for a losing key can always
be routed to the survivor. Tone and emergency flags are merged onto the
survivor, since one tower can detect a tone another missed.
"""
from __future__ import annotations

import time
import structlog
from dataclasses import dataclass, field
from typing import Callable, Optional

from config.settings import DedupConfig, RedirectConfig
from database.store_base import BaseCallStore
from models.schemas import CallRecord, RedirectEntry
from storage.blob_store import BaseBlobStore
from utils.fanout import run_all
from utils.metrics import MetricsPublisher

logger = structlog.get_logger()


@dataclass
class Resolution:
    canonical: CallRecord
    losers: list[CallRecord] = field(default_factory=list)
    keeping_current: bool = True
    transcribe: bool = False
    page: bool = False

    @property
    def is_duplicate(self) -> bool:
        return bool(self.losers)


def overlaps(record: CallRecord, candidate: CallRecord, buffer_s: float) -> bool:
    """
    True when ``candidate`` starts in, ends in, or covers the padded
    interval of ``record``. Records missing either bound never overlap.
    """
    if None in (record.start_time, record.end_time, candidate.start_time, candidate.end_time):
        return False
    lo = record.start_time - buffer_s
    hi = record.end_time + buffer_s
    starts_in = lo <= candidate.start_time <= hi
    ends_in = lo <= candidate.end_time <= hi
    covers = candidate.start_time <= lo and candidate.end_time >= hi
    return starts_in or ends_in or covers


def pick_canonical(duplicates: list[CallRecord]) -> tuple[CallRecord, list[CallRecord]]:
    """Longest recording wins; equal durations go to the latest insert."""
    ordered = sorted(duplicates, key=lambda r: (r.duration_seconds, r.inserted_at))
    return ordered[-1], ordered[:-1]


class DuplicateResolver:

    def __init__(
        self,
        store: BaseCallStore,
        blobs: BaseBlobStore,
        dedup: Optional[DedupConfig] = None,
        redirect: Optional[RedirectConfig] = None,
        metrics: Optional[MetricsPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.blobs = blobs
        self.dedup = dedup or DedupConfig()
        self.redirect = redirect or RedirectConfig()
        self.metrics = metrics
        self._clock = clock

    async def find_duplicates(self, record: CallRecord) -> list[CallRecord]:
        """All stored records (``record`` included) that are the same transmission."""
        if record.start_time is None or record.end_time is None:
            return [record]

        candidates = await self.store.query_calls_by_start_time(
            record.channel,
            record.start_time - self.dedup.selection_buffer_s,
            record.start_time + self.dedup.selection_buffer_s,
        )
        found = {record.inserted_at: record}
        for c in candidates:
            if c.inserted_at in found:
                continue
            if overlaps(record, c, self.dedup.overlap_buffer_s):
                found[c.inserted_at] = c
        return list(found.values())

    async def resolve(self, record: CallRecord) -> Resolution:
        duplicates = await self.find_duplicates(record)

        if len(duplicates) <= 1:
            page = False
            if record.is_page_tone:
                page = await self.store.claim_page_sent(record.channel, record.inserted_at)
            return Resolution(
                canonical=record,
                keeping_current=True,
                transcribe=record.needs_transcript,
                page=page,
            )

        canonical, losers = pick_canonical(duplicates)
        keeping_current = canonical.inserted_at == record.inserted_at
        loser_paged = any(x.page_sent for x in losers)

        # Tone detection runs per tower; the transmission carries a flag if any tower heard it
        merged_flags = {}
        if any(x.is_page_tone for x in duplicates) and not canonical.is_page_tone:
            merged_flags["is_page_tone"] = True
        if any(x.is_emergency for x in duplicates) and not canonical.is_emergency:
            merged_flags["is_emergency"] = True
        # An earlier canonical already started whatever its own flags owed
        owes_page = keeping_current or not canonical.is_page_tone
        owes_transcript = keeping_current or not canonical.needs_transcript

        logger.info(
            "duplicate_call_resolved",
            channel=record.channel,
            key=record.object_key,
            kept=canonical.object_key,
            dropped=[x.object_key for x in losers],
            keeping_current=keeping_current,
        )
        if self.metrics:
            await self.metrics.increment("Event", source="S3", type="dtr", event="duplicate call")

        # Stage 1: everything that must exist before the losers disappear
        prepare = {}
        expires_at = int(self._clock()) + self.redirect.ttl_seconds
        for loser in losers:
            owed_elsewhere = not keeping_current and record.needs_transcript
            in_flight = loser.needs_transcript and not loser.transcript
            if owed_elsewhere or in_flight:
                prepare[f"redirect:{loser.object_key}"] = self.store.put_redirect(RedirectEntry(
                    old_key=loser.object_key,
                    new_key=canonical.object_key,
                    expires_at=expires_at,
                ))

        carried = dict(merged_flags)
        if not canonical.transcript:
            transcripts = [x.transcript for x in losers if x.transcript]
            if transcripts:
                carried["transcript"] = max(transcripts, key=len)
        if loser_paged and not canonical.page_sent:
            carried["page_sent"] = True
        if carried:
            prepare["update_canonical"] = self.store.update_call(
                canonical.channel, canonical.inserted_at, **carried,
            )

        (await run_all(prepare)).raise_for_errors("resolve_duplicates")
        canonical = canonical.model_copy(update=carried)

        # Stage 2: drop the losers
        removals = {}
        for loser in losers:
            removals[f"delete_record:{loser.inserted_at}"] = self.store.delete_call(
                loser.channel, loser.inserted_at,
            )
            if loser.object_key != canonical.object_key:
                removals[f"delete_blob:{loser.object_key}"] = self.blobs.delete_object(loser.object_key)
        (await run_all(removals)).raise_for_errors("remove_duplicates")

        page = False
        if canonical.is_page_tone and owes_page and not loser_paged:
            page = await self.store.claim_page_sent(canonical.channel, canonical.inserted_at)

        return Resolution(
            canonical=canonical,
            losers=losers,
            keeping_current=keeping_current,
            transcribe=owes_transcript and canonical.needs_transcript,
            page=page,
        )
