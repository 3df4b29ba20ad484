"""
Tests for transcription job dispatch and result handling.
"""
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from config.settings import RedirectConfig, TranscriptionConfig
from core.errors import MalformedInputError, PipelineError
from models.queue import TranscribeResult
from models.schemas import CallRecord, RedirectEntry
from notify.composer import NO_VOICES
from transcription.consumer import JobTags, TranscriptionResultConsumer
from transcription.dispatcher import (
    TAG_CHANNEL, TAG_COST_CENTER, TAG_FILE, TAG_OBJECT_KEY, TAG_PAGE_ELIGIBLE,
    TranscriptionDispatcher, job_name_for,
)
from transcription.service import AwsTranscribeService, InMemorySpeechToText, TranscriptionServiceError
from utils.strings import MonotonicMillis

from support import T0, FakeClock, dtr_key


def make_record(inserted_at=1, start=T0, n=1, **fields) -> CallRecord:
    data = dict(channel=8330, inserted_at=inserted_at, object_key=dtr_key(8330, start, n),
                start_time=start, end_time=start + 10, duration_seconds=10, is_page_tone=True)
    data.update(fields)
    return CallRecord(**data)


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.send_page = AsyncMock()
    notifier.send_transcript = AsyncMock()
    return notifier


@pytest.fixture
def consumer(store, stt, notifier, metrics, clock):
    return TranscriptionResultConsumer(store, stt, notifier, RedirectConfig(), metrics, clock)


async def finished(stt, record: CallRecord, text: str, tags=None) -> TranscribeResult:
    name = job_name_for(record.channel, record.inserted_at)
    await stt.start_job(name, "memory://radio-audio/" + record.object_key, tags or {
        TAG_CHANNEL: str(record.channel),
        TAG_OBJECT_KEY: record.object_key,
        TAG_PAGE_ELIGIBLE: "y" if record.is_page_tone else "n",
    })
    stt.complete(name, text)
    return TranscribeResult(job_name=name)


# ──────────────────────────────────────────────────────────────
#  Dispatch
# ──────────────────────────────────────────────────────────────

class TestDispatcher:
    @pytest.mark.asyncio
    async def test_job_name_and_tags(self, stt, blobs, settings):
        dispatcher = TranscriptionDispatcher(stt, blobs, settings.paging_channels,
                                             MonotonicMillis(FakeClock()))
        rec = make_record()
        job = await dispatcher.start(rec)

        assert job.job_name == f"8330-{int(T0 * 1000)}"
        assert job.media_uri == f"memory://radio-audio/{rec.object_key}"
        assert job.tags == {
            TAG_CHANNEL: "8330",
            TAG_OBJECT_KEY: rec.object_key,
            TAG_FILE: rec.file_name,
            TAG_PAGE_ELIGIBLE: "y",
            TAG_COST_CENTER: "North",
        }

    @pytest.mark.asyncio
    async def test_emergency_recording_is_not_page_eligible(self, stt, blobs):
        dispatcher = TranscriptionDispatcher(stt, blobs)
        job = await dispatcher.start(make_record(is_page_tone=False, is_emergency=True))
        assert job.tags[TAG_PAGE_ELIGIBLE] == "n"
        assert TAG_COST_CENTER not in job.tags


class TestJobTags:
    def test_current_tags(self):
        tags = JobTags.parse("8330-1", {TAG_CHANNEL: "8330", TAG_OBJECT_KEY: "k",
                                        TAG_PAGE_ELIGIBLE: "y"})
        assert (tags.channel, tags.object_key, tags.page_eligible) == (8330, "k", True)

    def test_legacy_tags(self):
        tags = JobTags.parse("8330-1", {"Talkgroup": "8332", "FileKey": "k", "IsPage": "Y"})
        assert (tags.channel, tags.object_key, tags.page_eligible) == (8332, "k", True)

    def test_channel_from_job_name(self):
        tags = JobTags.parse("8331-17", {})
        assert tags.channel == 8331
        assert tags.object_key is None
        assert not tags.page_eligible

    def test_bad_channel_tag(self):
        with pytest.raises(MalformedInputError):
            JobTags.parse("8330-1", {TAG_CHANNEL: "north"})


# ──────────────────────────────────────────────────────────────
#  Redirect following
# ──────────────────────────────────────────────────────────────

class TestFollowRedirects:
    @pytest.mark.asyncio
    async def test_live_key(self, consumer, store):
        rec = make_record()
        await store.put_call(rec)
        assert (await consumer.follow_redirects(rec.object_key)).inserted_at == 1

    @pytest.mark.asyncio
    async def test_chain_of_redirects(self, consumer, store):
        target = make_record(inserted_at=9, n=9)
        await store.put_call(target)
        keys = [f"audio/dtr/old-{i}.m4a" for i in range(3)] + [target.object_key]
        for old, new in zip(keys, keys[1:]):
            await store.put_redirect(RedirectEntry(old_key=old, new_key=new, expires_at=int(T0) + 60))

        assert (await consumer.follow_redirects(keys[0])).inserted_at == 9

    @pytest.mark.asyncio
    async def test_chain_longer_than_hop_limit(self, consumer, store):
        target = make_record(inserted_at=9, n=9)
        await store.put_call(target)
        keys = [f"audio/dtr/old-{i}.m4a" for i in range(11)] + [target.object_key]
        for old, new in zip(keys, keys[1:]):
            await store.put_redirect(RedirectEntry(old_key=old, new_key=new, expires_at=int(T0) + 60))

        assert await consumer.follow_redirects(keys[0]) is None
        # Ten hops are still allowed
        assert (await consumer.follow_redirects(keys[1])).inserted_at == 9

    @pytest.mark.asyncio
    async def test_redirect_cycle_terminates(self, consumer, store):
        await store.put_redirect(RedirectEntry(old_key="a", new_key="b", expires_at=int(T0) + 60))
        await store.put_redirect(RedirectEntry(old_key="b", new_key="a", expires_at=int(T0) + 60))
        assert await consumer.follow_redirects("a") is None

    @pytest.mark.asyncio
    async def test_expired_redirect(self, consumer, store, clock):
        target = make_record()
        await store.put_call(target)
        await store.put_redirect(RedirectEntry(old_key="a", new_key=target.object_key,
                                               expires_at=int(T0) + 3600))
        clock.advance(3600)
        assert await consumer.follow_redirects("a") is None


# ──────────────────────────────────────────────────────────────
#  Result handling
# ──────────────────────────────────────────────────────────────

class TestResultHandling:
    @pytest.mark.asyncio
    async def test_invalid_job_name(self, consumer):
        with pytest.raises(MalformedInputError):
            await consumer.handle(TranscribeResult(job_name="not-a-job"))

    @pytest.mark.asyncio
    async def test_job_without_transcript_is_not_retried(self, consumer, stt):
        await stt.start_job("8330-5", "memory://x", {})
        with pytest.raises(PipelineError) as exc:
            await consumer.handle(TranscribeResult(job_name="8330-5"))
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_retried(self, consumer):
        with pytest.raises(TranscriptionServiceError) as exc:
            await consumer.handle(TranscribeResult(job_name="8330-5"))
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_claims_and_pages_with_transcript(self, consumer, store, stt, notifier, metrics):
        rec = make_record()
        await store.put_call(rec)
        await consumer.handle(await finished(stt, rec, "Engine 1 respond"))

        notifier.send_page.assert_awaited_once()
        assert notifier.send_page.await_args.kwargs["transcript"] == "Engine 1 respond"
        notifier.send_transcript.assert_not_awaited()
        stored = await store.get_call(8330, 1)
        assert stored.page_sent is True
        assert stored.transcript == "Engine 1 respond"
        assert any(d["MetricName"] == "PageToTranscript" for d in metrics.recorded)

    @pytest.mark.asyncio
    async def test_already_paged_sends_transcript(self, consumer, store, stt, notifier):
        rec = make_record(page_sent=True)
        await store.put_call(rec)
        await consumer.handle(await finished(stt, rec, "Engine 1 respond"))

        notifier.send_page.assert_not_awaited()
        notifier.send_transcript.assert_awaited_once_with(8330, "Engine 1 respond",
                                                          object_key=rec.object_key)

    @pytest.mark.asyncio
    async def test_not_page_eligible_only_stores(self, consumer, store, stt, notifier):
        rec = make_record(is_page_tone=False, is_emergency=True)
        await store.put_call(rec)
        await consumer.handle(await finished(stt, rec, "Mayday"))

        assert (await store.get_call(8330, 1)).transcript == "Mayday"
        notifier.send_page.assert_not_awaited()
        notifier.send_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_transcript(self, consumer, store, stt):
        rec = make_record(page_sent=True)
        await store.put_call(rec)
        await consumer.handle(await finished(stt, rec, ""))
        assert (await store.get_call(8330, 1)).transcript == NO_VOICES

    @pytest.mark.asyncio
    async def test_existing_transcript_keeps_longer_and_skips_distribution(self, consumer, store,
                                                                            stt, notifier):
        rec = make_record(page_sent=True, transcript="Engine 1")
        await store.put_call(rec)
        await consumer.handle(await finished(stt, rec, "Engine 1 respond to Main"))
        assert (await store.get_call(8330, 1)).transcript == "Engine 1 respond to Main"

        await store.update_call(8330, 1, transcript="A very long transcript indeed, longer")
        await consumer.handle(await finished(stt, rec, "short"))
        assert (await store.get_call(8330, 1)).transcript == "A very long transcript indeed, longer"
        notifier.send_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_record_is_dropped(self, consumer, stt, notifier):
        result = await finished(stt, make_record(), "Engine 1")
        await consumer.handle(result)
        notifier.send_page.assert_not_awaited()
        notifier.send_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_legacy_job_without_key_sends_transcript(self, consumer, stt, notifier):
        await stt.start_job("8330-77", "memory://x", {"Talkgroup": "8330", "IsPage": "y"})
        stt.complete("8330-77", "Engine 1")
        await consumer.handle(TranscribeResult(job_name="8330-77"))
        notifier.send_transcript.assert_awaited_once_with(8330, "Engine 1")

    @pytest.mark.asyncio
    async def test_tags_in_message_skip_job_lookup(self, consumer, store, stt):
        rec = make_record(page_sent=True)
        await store.put_call(rec)
        done = await finished(stt, rec, "Engine 1")
        job = stt.jobs[done.job_name]
        stt.get_job = AsyncMock()

        await consumer.handle(TranscribeResult(job_name=done.job_name, tags=job.tags,
                                               transcript_uri=job.transcript_uri))
        stt.get_job.assert_not_awaited()
        assert (await store.get_call(8330, 1)).transcript == "Engine 1"


# ──────────────────────────────────────────────────────────────
#  AWS backend
# ──────────────────────────────────────────────────────────────

class TestAwsTranscribe:
    @pytest.mark.asyncio
    async def test_start_job_passes_tags_and_vocabulary(self):
        client = MagicMock()
        service = AwsTranscribeService(TranscriptionConfig(vocabulary_name="radio"), client=client)
        await service.start_job("8330-1", "s3://radio-audio/k", {TAG_CHANNEL: "8330"})

        kwargs = client.start_transcription_job.call_args.kwargs
        assert kwargs["TranscriptionJobName"] == "8330-1"
        assert kwargs["Media"] == {"MediaFileUri": "s3://radio-audio/k"}
        assert kwargs["Settings"]["VocabularyName"] == "radio"
        assert kwargs["Tags"] == [{"Key": TAG_CHANNEL, "Value": "8330"}]

    @pytest.mark.asyncio
    async def test_get_job_maps_response(self):
        client = MagicMock()
        client.get_transcription_job.return_value = {"TranscriptionJob": {
            "TranscriptionJobStatus": "COMPLETED",
            "Media": {"MediaFileUri": "s3://radio-audio/k"},
            "Transcript": {"TranscriptFileUri": "https://transcripts/8330-1.json"},
            "Tags": [{"Key": TAG_OBJECT_KEY, "Value": "k"}],
        }}
        job = await AwsTranscribeService(TranscriptionConfig(), client=client).get_job("8330-1")
        assert job.status == "COMPLETED"
        assert job.transcript_uri == "https://transcripts/8330-1.json"
        assert job.tags == {TAG_OBJECT_KEY: "k"}

    @pytest.mark.asyncio
    async def test_fetch_transcript(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": {"transcripts": [{"transcript": "Engine 1"}]}})

        service = AwsTranscribeService(TranscriptionConfig(), client=MagicMock(),
                                       http_transport=httpx.MockTransport(handler))
        assert await service.fetch_transcript("https://transcripts/8330-1.json") == "Engine 1"

    @pytest.mark.asyncio
    async def test_fetch_transcript_http_error(self):
        service = AwsTranscribeService(
            TranscriptionConfig(), client=MagicMock(),
            http_transport=httpx.MockTransport(lambda request: httpx.Response(403)),
        )
        with pytest.raises(TranscriptionServiceError):
            await service.fetch_transcript("https://transcripts/8330-1.json")
