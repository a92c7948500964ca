"""Tests for oracle orchestration: cache, model groups, tiered re-analysis."""

from __future__ import annotations

import asyncio
import hashlib
from datetime import timedelta

import pytest

from chatdigest.errors import OracleError, OracleTimeoutError
from chatdigest.llm.oracle import TASK_SUMMARIZE, TASK_SUMMARIZE_TIERED
from chatdigest.models import Candidate, SummaryCacheEntry
from chatdigest.settings import PipelineSettings
from chatdigest.summarizer import Summarizer, candidate_cache_key, summary_cache_key
from fakes import NOW, FakeClock, FakeOracle, InMemoryStore, make_raw


class TieredOracle(FakeOracle):
    """Answers the tiered task with its own summaries; can fail on it."""

    def __init__(self, *args, tiered_fails=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.tiered_fails = tiered_fails

    async def process_batch(self, messages, digest_language, model_hint="", tone="", task=TASK_SUMMARIZE):
        results = await super().process_batch(messages, digest_language, model_hint, tone, task)
        if task == TASK_SUMMARIZE_TIERED:
            if self.tiered_fails:
                raise OracleError("tiered model unavailable")
            for result in results:
                result.summary = "Tiered: " + result.summary
                result.importance_score = 0.95
        return results


class ShortOracle(FakeOracle):
    """Drops the last answer of every batch."""

    async def process_batch(self, messages, digest_language, model_hint="", tone="", task=TASK_SUMMARIZE):
        results = await super().process_batch(messages, digest_language, model_hint, tone, task)
        return results[:-1]


class SlowOracle(FakeOracle):
    async def process_batch(self, messages, digest_language, model_hint="", tone="", task=TASK_SUMMARIZE):
        await asyncio.sleep(1)
        return []


def _candidates(store, *texts, **raw_kwargs):
    cands = []
    for i, text in enumerate(texts):
        raw = store.add_raw(make_raw(text, tg_message_id=i + 1, **raw_kwargs))
        cands.append(Candidate(raw=raw, text=text))
    return cands


def test_summary_cache_key():
    assert summary_cache_key("abc", "v1") == "abc:v1"
    assert summary_cache_key("abc", "") == "abc:v1"
    assert summary_cache_key("abc", "v2", "Preview title") == (
        "abc:v2:" + hashlib.sha256(b"Preview title").hexdigest()
    )
    assert summary_cache_key("", "v1") == ""


@pytest.mark.asyncio
async def test_cache_hit_skips_oracle():
    store, oracle = InMemoryStore(), FakeOracle()
    (cand,) = _candidates(store, "Budget approved for trams")
    store.cache[(candidate_cache_key(cand), "en")] = SummaryCacheEntry(
        candidate_cache_key(cand), "en", "Cached summary", topic="Budget",
        relevance_score=0.7, importance_score=0.5, updated_at=NOW,
    )
    summarizer = Summarizer(oracle, store, clock=FakeClock(NOW + timedelta(days=1)))

    results, cached = await summarizer.summarize([cand], PipelineSettings())

    assert cached == [True]
    assert results[0].summary == "Cached summary"
    assert results[0].relevance_score == 0.7
    assert oracle.batch_calls == []


@pytest.mark.asyncio
async def test_cache_falls_back_to_bare_hash():
    store = InMemoryStore()
    (cand,) = _candidates(store, "Budget approved for trams")
    store.cache[(cand.raw.canonical_hash, "en")] = SummaryCacheEntry(
        cand.raw.canonical_hash, "en", "Older cached summary", updated_at=NOW,
    )
    summarizer = Summarizer(FakeOracle(), store, clock=FakeClock(NOW))
    entry = await summarizer.lookup_cache(cand, "EN")
    assert entry.summary == "Older cached summary"


@pytest.mark.asyncio
async def test_stale_cache_is_ignored():
    store, oracle = InMemoryStore(), FakeOracle()
    (cand,) = _candidates(store, "Budget approved for trams")
    store.cache[(candidate_cache_key(cand), "en")] = SummaryCacheEntry(
        candidate_cache_key(cand), "en", "Old", updated_at=NOW - timedelta(days=31),
    )
    results, cached = await Summarizer(oracle, store, clock=FakeClock(NOW)).summarize([cand], PipelineSettings())

    assert cached == [False]
    assert results[0].summary.startswith("Report 0:")
    assert len(oracle.batch_calls) == 1


@pytest.mark.asyncio
async def test_store_cache_uses_extended_key():
    store = InMemoryStore()
    (cand,) = _candidates(store, "Budget approved for trams")
    cand.preview_text = "City budget page"
    summarizer = Summarizer(FakeOracle(), store)

    await summarizer.store_cache(cand, "ru", SummaryCacheEntry("", "", "Сводка"))
    await summarizer.store_cache(cand, "ru", SummaryCacheEntry("", "", "  "))

    key = candidate_cache_key(cand)
    assert key.count(":") == 2
    assert list(store.cache) == [(key, "ru")]
    assert store.cache[(key, "ru")].summary == "Сводка"


@pytest.mark.asyncio
async def test_failed_group_releases_claims():
    store = InMemoryStore()
    cands = _candidates(store, "first post", "second post")
    oracle = FakeOracle(fail_with=OracleError("provider down"))

    results, cached = await Summarizer(oracle, store).summarize(cands, PipelineSettings())

    assert results == [None, None]
    assert sorted(store.released) == sorted(c.raw.id for c in cands)


@pytest.mark.asyncio
async def test_vision_candidates_get_their_own_batch():
    store, oracle = InMemoryStore(), FakeOracle()
    text_cand, = _candidates(store, "plain post")
    photo_raw = store.add_raw(make_raw("photo post", tg_message_id=9, media_blob=b"\x89PNG"))
    photo_cand = Candidate(raw=photo_raw, text="photo post")
    settings = PipelineSettings(vision_routing_enabled=True, vision_model="vision-model")

    results, _ = await Summarizer(oracle, store).summarize([text_cand, photo_cand], settings)

    assert oracle.batch_calls == [
        (TASK_SUMMARIZE, "", [text_cand.raw.id]),
        (TASK_SUMMARIZE, "vision-model", [photo_raw.id]),
    ]
    assert photo_cand.model == "vision-model"
    assert [r.index for r in results] == [0, 1]


@pytest.mark.asyncio
async def test_short_answer_maps_by_position():
    store = InMemoryStore()
    cands = _candidates(store, "first post", "second post")
    results, _ = await Summarizer(ShortOracle(), store).summarize(cands, PipelineSettings())
    assert results[0] is not None
    assert results[1] is None


@pytest.mark.asyncio
async def test_tiered_reanalysis_replaces_high_importance():
    store = InMemoryStore()
    oracle = TieredOracle(scripted={"Major": {"relevance_score": 0.9, "importance_score": 0.9, "summary": "Major news"}})
    cands = _candidates(store, "Major blackout in Kyiv", "minor update")
    settings = PipelineSettings(tiered_importance_enabled=True, tiered_importance_model="big-model")

    results, _ = await Summarizer(oracle, store).summarize(cands, settings)

    assert results[0].summary == "Tiered: Major news"
    assert results[0].index == 0
    assert not results[1].summary.startswith("Tiered")
    assert oracle.batch_calls[-1] == (TASK_SUMMARIZE_TIERED, "big-model", [cands[0].raw.id])


@pytest.mark.asyncio
async def test_tiered_failure_keeps_first_pass():
    store = InMemoryStore()
    oracle = TieredOracle(
        scripted={"Major": {"relevance_score": 0.9, "importance_score": 0.9, "summary": "Major news"}},
        tiered_fails=True,
    )
    cands = _candidates(store, "Major blackout in Kyiv")
    settings = PipelineSettings(tiered_importance_enabled=True)

    results, _ = await Summarizer(oracle, store).summarize(cands, settings)

    assert results[0].summary == "Major news"
    assert store.released == []


@pytest.mark.asyncio
async def test_timeout_raises_and_releases():
    store = InMemoryStore()
    cands = _candidates(store, "slow post")
    results = [None]
    summarizer = Summarizer(SlowOracle(), store, timeout=0.01)

    with pytest.raises(OracleTimeoutError):
        await summarizer.process_group(cands, results, "", [0], PipelineSettings())
    assert store.released == [cands[0].raw.id]
