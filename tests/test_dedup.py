"""
Tests for duplicate resolution.

Covers:
  - Padded-overlap test and canonical selection
  - Loser removal (record + blob), transcript propagation, redirects
  - Page claim on the canonical record only, tone and emergency flags merged
  - The three-recording 8330 scenario, sequential and concurrent
"""
import asyncio
import itertools
import pytest

from config.settings import DedupConfig, RedirectConfig
from ingest.dedup import DuplicateResolver, overlaps, pick_canonical
from models.schemas import CallRecord

from support import T0, FakeClock, dtr_key


def call(inserted_at: int, start: float, end: float, channel: int = 8330, tone: bool = True,
         emergency: bool = False, transcript=None, page_sent=None, n: int = 1) -> CallRecord:
    return CallRecord(
        channel=channel,
        inserted_at=inserted_at,
        object_key=dtr_key(channel, start, n),
        start_time=start,
        end_time=end,
        duration_seconds=end - start,
        is_page_tone=tone,
        is_emergency=emergency,
        transcript=transcript,
        page_sent=page_sent,
    )


@pytest.fixture
def resolver(store, blobs, metrics):
    return DuplicateResolver(store, blobs, DedupConfig(), RedirectConfig(), metrics, FakeClock())


async def seed(store, blobs, *records):
    for r in records:
        await store.put_call(r)
        await blobs.put_object(r.object_key, b"audio")


# ──────────────────────────────────────────────────────────────
#  Overlap & canonical choice
# ──────────────────────────────────────────────────────────────

class TestOverlap:
    def test_candidate_starting_inside(self):
        assert overlaps(call(1, 100, 110), call(2, 105, 130), 1)

    def test_candidate_ending_inside(self):
        assert overlaps(call(1, 100, 110), call(2, 80, 100.5), 1)

    def test_candidate_covering(self):
        assert overlaps(call(1, 100, 110), call(2, 90, 120), 1)

    def test_buffer_widens_the_interval(self):
        assert overlaps(call(1, 100, 110), call(2, 110.8, 115), 1)
        assert not overlaps(call(1, 100, 110), call(2, 111.5, 115), 1)

    def test_missing_bounds_never_overlap(self):
        open_ended = call(2, 100, 110).model_copy(update={"end_time": None})
        assert not overlaps(call(1, 100, 110), open_ended, 1)


class TestPickCanonical:
    def test_longest_wins(self):
        canonical, losers = pick_canonical([call(1, 100, 110), call(2, 100, 112), call(3, 100.5, 109)])
        assert canonical.inserted_at == 2
        assert sorted(x.inserted_at for x in losers) == [1, 3]

    def test_tie_goes_to_latest_insert(self):
        canonical, _ = pick_canonical([call(7, 100, 110), call(3, 100, 110), call(5, 100, 110)])
        assert canonical.inserted_at == 7

    def test_order_independent(self):
        records = [call(1, 100, 110), call(2, 100.5, 109), call(3, 100, 112)]
        winners = {pick_canonical(list(p))[0].inserted_at for p in itertools.permutations(records)}
        assert winners == {3}


# ──────────────────────────────────────────────────────────────
#  Resolver
# ──────────────────────────────────────────────────────────────

class TestDuplicateResolver:
    @pytest.mark.asyncio
    async def test_single_tone_recording_claims_page(self, resolver, store, blobs):
        rec = call(1, T0, T0 + 10)
        await seed(store, blobs, rec)
        res = await resolver.resolve(rec)
        assert res.page and res.transcribe and not res.is_duplicate
        assert (await store.get_call(8330, 1)).page_sent is True

    @pytest.mark.asyncio
    async def test_single_plain_recording_owes_nothing(self, resolver, store, blobs):
        rec = call(1, T0, T0 + 10, tone=False)
        await seed(store, blobs, rec)
        res = await resolver.resolve(rec)
        assert not res.page and not res.transcribe

    @pytest.mark.asyncio
    async def test_shorter_newcomer_is_dropped(self, resolver, store, blobs):
        kept = call(1, T0, T0 + 12, page_sent=True)
        new = call(2, T0 + 0.5, T0 + 9, n=2)
        await seed(store, blobs, kept, new)

        res = await resolver.resolve(new)
        assert res.canonical.inserted_at == 1
        assert not res.keeping_current
        assert not res.page and not res.transcribe
        assert await store.get_call(8330, 2) is None
        assert not blobs.exists(new.object_key)
        assert blobs.exists(kept.object_key)

        redirect = await store.get_redirect(new.object_key, T0)
        assert redirect.new_key == kept.object_key

    @pytest.mark.asyncio
    async def test_longer_newcomer_replaces_paged_record(self, resolver, store, blobs):
        old = call(1, T0, T0 + 10, page_sent=True)
        new = call(2, T0, T0 + 12, n=2)
        await seed(store, blobs, old, new)

        res = await resolver.resolve(new)
        assert res.keeping_current
        assert res.transcribe
        # The page already went out for the old record
        assert not res.page
        assert (await store.get_call(8330, 2)).page_sent is True
        assert await store.find_call_by_key(old.object_key) is None
        # The old record's transcription may still be running
        assert (await store.get_redirect(old.object_key, T0)).new_key == new.object_key

    @pytest.mark.asyncio
    async def test_longest_loser_transcript_propagates(self, resolver, store, blobs):
        short = call(1, T0, T0 + 5, transcript="engine one")
        longer = call(2, T0, T0 + 6, transcript="engine one respond to fire", n=2)
        new = call(3, T0, T0 + 12, n=3)
        await seed(store, blobs, short, longer, new)

        await resolver.resolve(new)
        assert (await store.get_call(8330, 3)).transcript == "engine one respond to fire"

    @pytest.mark.asyncio
    async def test_canonical_transcript_is_not_overwritten(self, resolver, store, blobs):
        kept = call(1, T0, T0 + 12, transcript="kept text")
        new = call(2, T0, T0 + 5, transcript="a much longer transcript from a shorter file", n=2)
        await seed(store, blobs, kept, new)

        await resolver.resolve(new)
        assert (await store.get_call(8330, 1)).transcript == "kept text"

    @pytest.mark.asyncio
    async def test_tone_heard_by_one_tower_merges_onto_plain_recording(self, resolver, store, blobs):
        plain = call(1, T0, T0 + 12, tone=False)
        tone = call(2, T0, T0 + 10, n=2)
        await seed(store, blobs, plain, tone)

        res = await resolver.resolve(tone)
        assert res.is_duplicate
        assert res.canonical.object_key == plain.object_key
        assert res.canonical.is_page_tone
        assert res.page and res.transcribe

        survivors = await store.query_calls_by_start_time(8330, T0 - 60, T0 + 60)
        assert len(survivors) == 1
        assert survivors[0].is_page_tone is True
        assert survivors[0].page_sent is True
        assert not blobs.exists(tone.object_key)

    @pytest.mark.asyncio
    async def test_plain_newcomer_inherits_tone_and_page(self, resolver, store, blobs):
        tone = call(1, T0, T0 + 10, page_sent=True)
        plain = call(2, T0, T0 + 12, tone=False, n=2)
        await seed(store, blobs, tone, plain)

        res = await resolver.resolve(plain)
        assert res.keeping_current
        assert not res.page
        assert res.transcribe
        kept = await store.get_call(8330, 2)
        assert kept.is_page_tone and kept.page_sent is True

    @pytest.mark.asyncio
    async def test_tone_loser_pages_for_emergency_only_canonical(self, resolver, store, blobs):
        emergency = call(1, T0, T0 + 12, tone=False, emergency=True)
        tone = call(2, T0, T0 + 10, n=2)
        await seed(store, blobs, emergency, tone)

        res = await resolver.resolve(tone)
        assert not res.keeping_current
        assert res.page
        # The canonical's own transcription was started when it arrived
        assert not res.transcribe
        kept = await store.get_call(8330, 1)
        assert kept.is_page_tone and kept.is_emergency

    @pytest.mark.asyncio
    async def test_mixed_flags_page_once_in_any_order(self, resolver, store, blobs):
        specs = [(T0, T0 + 12, False), (T0, T0 + 10, True), (T0 + 0.5, T0 + 9, False)]
        ids = itertools.count(1)
        for order in itertools.permutations(range(3)):
            for r in await store.query_calls_by_start_time(8330, T0 - 60, T0 + 60):
                await store.delete_call(r.channel, r.inserted_at)
            granted = 0
            for idx in order:
                s, e, tone = specs[idx]
                rec = call(next(ids), s, e, tone=tone, n=idx + 1)
                await seed(store, blobs, rec)
                granted += (await resolver.resolve(rec)).page
            survivors = await store.query_calls_by_start_time(8330, T0 - 60, T0 + 60)
            assert len(survivors) == 1, order
            assert survivors[0].duration_seconds == 12
            assert survivors[0].is_page_tone
            assert granted == 1, order

    @pytest.mark.asyncio
    async def test_other_channels_are_ignored(self, resolver, store, blobs):
        other = call(1, T0, T0 + 12, channel=8332)
        new = call(2, T0, T0 + 10, n=2)
        await seed(store, blobs, other, new)
        res = await resolver.resolve(new)
        assert not res.is_duplicate

    @pytest.mark.asyncio
    async def test_failed_redirect_keeps_losers(self, resolver, store, blobs):
        kept = call(1, T0, T0 + 12)
        new = call(2, T0, T0 + 5, n=2)
        await seed(store, blobs, kept, new)

        async def broken(entry):
            raise ConnectionError("store unavailable")
        store.put_redirect = broken

        from core.errors import SubOperationError
        with pytest.raises(SubOperationError) as exc:
            await resolver.resolve(new)
        assert exc.value.context == "resolve_duplicates"
        assert exc.value.retryable
        # Nothing was deleted before the redirect existed
        assert await store.get_call(8330, 2) is not None
        assert blobs.exists(new.object_key)

    @pytest.mark.asyncio
    async def test_duplicate_metric_emitted(self, resolver, store, blobs, metrics):
        kept = call(1, T0, T0 + 12)
        new = call(2, T0, T0 + 5, n=2)
        await seed(store, blobs, kept, new)
        await resolver.resolve(new)
        assert any(d["MetricName"] == "Event" for d in metrics.recorded)


# ──────────────────────────────────────────────────────────────
#  8330 scenario
# ──────────────────────────────────────────────────────────────

SCENARIO = [(T0 + 100, T0 + 110), (T0 + 100.5, T0 + 109), (T0 + 100, T0 + 112)]


class TestScenario8330:
    @pytest.mark.asyncio
    async def test_concurrent_arrival_keeps_longest_and_pages_once(self, resolver, store, blobs):
        records = [call(i + 1, s, e, n=i + 1) for i, (s, e) in enumerate(SCENARIO)]
        await seed(store, blobs, *records)

        results = await asyncio.gather(*(resolver.resolve(r) for r in records))

        assert sum(r.page for r in results) == 1
        granted = next(r for r in results if r.page)
        assert granted.canonical.object_key == records[2].object_key

        survivors = await store.query_calls_by_start_time(8330, T0, T0 + 200)
        assert [s.inserted_at for s in survivors] == [3]
        assert survivors[0].page_sent is True
        assert not blobs.exists(records[0].object_key)
        assert not blobs.exists(records[1].object_key)
        assert blobs.exists(records[2].object_key)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    async def test_sequential_arrival_grants_one_page(self, resolver, store, blobs, order):
        granted = 0
        for seq, idx in enumerate(order, start=1):
            s, e = SCENARIO[idx]
            rec = call(seq, s, e, n=idx + 1)
            await seed(store, blobs, rec)
            res = await resolver.resolve(rec)
            granted += res.page

        assert granted == 1
        survivors = await store.query_calls_by_start_time(8330, T0, T0 + 200)
        assert len(survivors) == 1
        assert survivors[0].duration_seconds == 12
        assert survivors[0].page_sent is True
