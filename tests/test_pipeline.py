"""End-to-end tests for the pipeline worker over in-memory collaborators."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from chatdigest.errors import OracleError
from chatdigest.models import (
    BULLET_PENDING,
    STATUS_ERROR,
    STATUS_READY,
    STATUS_REJECTED,
    ExtractedBullet,
    GateDecision,
    Item,
    RatingSummary,
    ResolvedLink,
    SummaryCacheEntry,
)
from chatdigest.pipeline import Pipeline
from fakes import (
    NOW,
    FakeClock,
    FakeEmbedder,
    FakeLinkResolver,
    FakeOracle,
    InMemoryStore,
    RecordingSeeder,
    make_raw,
)

METRO = "Kyiv metro will extend operating hours until 1 am from next week, the transport department said."


def _pipeline(config, store, oracle, clock=None, **kwargs):
    return Pipeline(config, store, oracle, clock=clock or FakeClock(NOW), **kwargs)


def _add(store, text, tg_message_id=1, **kwargs):
    return store.add_raw(make_raw(text, tg_message_id=tg_message_id, **kwargs))


@pytest.mark.asyncio
async def test_empty_queue(sample_config, memory_store, fake_oracle):
    assert await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch() == 0


@pytest.mark.asyncio
async def test_identical_texts_in_one_batch(sample_config, memory_store, fake_oracle):
    first = _add(memory_store, METRO, channel_id="chan-1", tg_message_id=1, minutes_ago=40)
    second = _add(memory_store, METRO, channel_id="chan-2", tg_message_id=2, minutes_ago=30)

    claimed = await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch()

    assert claimed == 2
    assert memory_store.drop_reasons() == {second.id: ("duplicate_batch", first.id)}
    assert memory_store.items[first.id].status == STATUS_READY
    assert second.id not in memory_store.items
    assert fake_oracle.batch_calls == [("summarize", "", [first.id])]
    assert first.processed_at is not None
    assert second.processed_at is not None


@pytest.mark.asyncio
async def test_relevance_gate_drops_link_only(sample_config, memory_store, fake_oracle):
    memory_store.settings["relevance_gate_enabled"] = "true"
    raw = _add(memory_store, "https://example.com/article")

    await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch()

    assert memory_store.gate_logs == [
        (raw.id, GateDecision("irrelevant", 0.9, "link_only", "heuristic", "v1")),
    ]
    assert memory_store.drop_reasons() == {raw.id: ("relevance_gate", "link_only")}
    assert fake_oracle.batch_calls == []
    assert fake_oracle.gate_calls == []
    assert raw.processed_at is not None


@pytest.mark.asyncio
async def test_channel_weight_scales_importance(sample_config, memory_store):
    oracle = FakeOracle(scripted={"depot": {
        "relevance_score": 0.8,
        "importance_score": 0.6,
        "topic": "Transport",
        "summary": "John raised 25M on Monday for the new Lviv tram depot, the council said.",
        "language": "en",
    }})
    raw = _add(memory_store, "Fundraising for the new tram depot in Lviv has closed, organisers said.", importance_weight=1.5)

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    item = memory_store.items[raw.id]
    assert item.status == STATUS_READY
    assert item.relevance_score == pytest.approx(0.8)
    assert item.importance_score == pytest.approx(0.9)
    assert item.topic == "Transport"
    assert item.language == "en"
    assert item.language_source == "original"
    assert item.first_seen_at == raw.tg_date

    entry = memory_store.cache[(f"{raw.canonical_hash}:v1", "en")]
    assert entry.summary == item.summary
    assert (entry.relevance_score, entry.importance_score) == (0.8, 0.6)


@pytest.mark.asyncio
async def test_low_relevance_is_rejected_without_translation(sample_config, memory_store):
    memory_store.settings["digest_language"] = '"ru"'
    oracle = FakeOracle(scripted={"metro": {
        "relevance_score": 0.2, "importance_score": 0.5,
        "summary": "Kyiv metro extends hours until 1 am from 10 March, officials said.",
    }})
    raw = _add(memory_store, METRO)

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    assert memory_store.items[raw.id].status == STATUS_REJECTED
    assert oracle.translate_calls == []


@pytest.mark.asyncio
async def test_ready_summary_is_translated(sample_config, memory_store, fake_oracle):
    memory_store.settings["digest_language"] = '"ru"'
    raw = _add(memory_store, METRO)

    await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch()

    item = memory_store.items[raw.id]
    assert [lang for _, lang in fake_oracle.translate_calls] == ["ru"]
    assert item.summary.startswith("[ru] Report 0:")
    assert item.language == "en"


@pytest.mark.asyncio
async def test_empty_summary_falls_back_to_lead_sentence(sample_config, memory_store):
    oracle = FakeOracle(scripted={"metro": {"relevance_score": 0.8, "importance_score": 0.5, "summary": ""}})
    raw = _add(memory_store, METRO)

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    assert memory_store.items[raw.id].summary == METRO


@pytest.mark.asyncio
async def test_empty_summary_without_lead_is_an_error(sample_config, memory_store):
    oracle = FakeOracle(scripted={"word": {"relevance_score": 0.8, "importance_score": 0.5, "summary": ""}})
    raw = _add(memory_store, "word " * 50)

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    item = memory_store.items[raw.id]
    assert item.status == STATUS_ERROR
    assert item.retry_count == 1
    assert raw.processed_at is not None
    assert memory_store.cache == {}


@pytest.mark.asyncio
async def test_oracle_failure_releases_claims(sample_config, memory_store, news_texts):
    raws = [_add(memory_store, text, tg_message_id=i) for i, text in enumerate(news_texts)]
    oracle = FakeOracle(fail_with=OracleError("provider down"))

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    assert memory_store.items == {}
    for raw in raws:
        assert raw.processing_started_at is None
        assert raw.processed_at is None


@pytest.mark.asyncio
async def test_cached_summary_skips_oracle(sample_config, memory_store, fake_oracle):
    raw = _add(memory_store, METRO)
    key = f"{raw.canonical_hash}:v1"
    memory_store.cache[(key, "en")] = SummaryCacheEntry(
        key, "en", "Kyiv metro will run until 1 am from next week after a 3 month trial.",
        topic="Transport", language="en", relevance_score=0.7, importance_score=0.5, updated_at=NOW,
    )

    await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch()

    assert fake_oracle.batch_calls == []
    item = memory_store.items[raw.id]
    assert item.summary == "Kyiv metro will run until 1 am from next week after a 3 month trial."
    assert item.relevance_score == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_bullet_mode(sample_config, memory_store, news_texts):
    memory_store.settings["bullet_mode_enabled"] = "true"
    oracle = FakeOracle(bullets=[
        ExtractedBullet("Council approved 120 million for trams.", relevance_score=0.7, importance_score=0.9),
        ExtractedBullet("Construction starts in April.", relevance_score=0.8, importance_score=0.3),
    ])
    embedder = FakeEmbedder()
    raw = _add(memory_store, news_texts[0])
    pipeline = _pipeline(sample_config, memory_store, oracle, embedder=embedder)

    await pipeline.process_next_batch()
    await pipeline.drain_background()

    item = memory_store.items[raw.id]
    assert item.status == STATUS_READY
    assert item.bullet_total_count == 2
    assert item.bullet_included_count == 1
    assert item.relevance_score == pytest.approx(0.8)
    assert item.importance_score == pytest.approx(0.9)

    bullets = sorted(memory_store.bullets.values(), key=lambda b: b.bullet_index)
    assert [b.text for b in bullets] == [
        "Council approved 120 million for trams.",
        "Construction starts in April.",
    ]
    assert all(b.status == BULLET_PENDING and b.item_id == item.id for b in bullets)
    assert all(len(b.embedding) == 64 for b in bullets)
    assert oracle.bullet_calls[0].max_bullets == 3


@pytest.mark.asyncio
async def test_bullet_mode_rejects_when_no_bullet_is_important(sample_config, memory_store, news_texts):
    memory_store.settings["bullet_mode_enabled"] = "true"
    oracle = FakeOracle(bullets=[ExtractedBullet("Construction starts in April.", relevance_score=0.8, importance_score=0.1)])
    raw = _add(memory_store, news_texts[0])

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    assert memory_store.items[raw.id].status == STATUS_REJECTED
    assert memory_store.bullets == {}


@pytest.mark.asyncio
async def test_channel_ratings_bias_scores(sample_config, memory_store, fake_oracle):
    memory_store.ratings["chan-1"] = RatingSummary(weighted_good=10, weighted_total=10, total_count=10)
    raw = _add(memory_store, METRO)

    await _pipeline(sample_config, memory_store, fake_oracle).process_next_batch()

    item = memory_store.items[raw.id]
    assert item.relevance_score == pytest.approx(0.85)
    assert item.importance_score == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_semantic_mode_embeds_and_dedups(sample_config, memory_store, fake_oracle, news_texts):
    memory_store.settings["dedup_mode"] = '"semantic"'
    same = [1.0] + [0.0] * 63
    embedder = FakeEmbedder(overrides={"tram": same})
    first = _add(memory_store, news_texts[0], tg_message_id=1, minutes_ago=40)
    second = _add(
        memory_store,
        "Lviv tram lines get a 120 million budget from the city council, works begin in April.",
        channel_id="chan-2", tg_message_id=2, minutes_ago=30,
    )

    await _pipeline(sample_config, memory_store, fake_oracle, embedder=embedder).process_next_batch()

    assert memory_store.drop_reasons() == {second.id: ("dedup_semantic_batch", first.id)}
    item = memory_store.items[first.id]
    assert memory_store.embeddings[item.id] == same


@pytest.mark.asyncio
async def test_embedding_failure_releases_claim(sample_config, memory_store, fake_oracle, news_texts):
    memory_store.settings["dedup_mode"] = '"semantic"'
    raws = [_add(memory_store, text, tg_message_id=i) for i, text in enumerate(news_texts)]
    embedder = FakeEmbedder(fail_on=("Kyiv metro",))

    await _pipeline(sample_config, memory_store, fake_oracle, embedder=embedder).process_next_batch()

    failed = raws[1]
    assert memory_store.released == [failed.id]
    assert failed.processing_started_at is None
    assert set(memory_store.items) == {raws[0].id, raws[2].id}


@pytest.mark.asyncio
async def test_similar_to_irrelevant_is_rejected(sample_config, memory_store, fake_oracle):
    memory_store.settings["dedup_mode"] = '"semantic"'
    vec = [0.0, 1.0] + [0.0] * 62
    memory_store.embeddings["rated-item"] = vec
    memory_store.irrelevant_item_ids.add("rated-item")
    memory_store.settings["domain_allowlist"] = '"example.com"'
    memory_store.ratings["chan-1"] = RatingSummary(weighted_good=10, weighted_total=10, total_count=10)
    raw = _add(memory_store, METRO + " https://example.com/metro")

    await _pipeline(sample_config, memory_store, fake_oracle, embedder=FakeEmbedder(overrides={"metro": vec})).process_next_batch()

    item = memory_store.items[raw.id]
    assert item.status == STATUS_REJECTED
    assert item.relevance_score == 0.0
    assert item.importance_score == 0.0


@pytest.mark.asyncio
async def test_weak_summary_falls_back_to_lead_sentence(sample_config, memory_store):
    oracle = FakeOracle(scripted={"sanctions": {
        "relevance_score": 0.8, "importance_score": 0.5,
        "summary": "Officials discussed some things at a meeting today.",
    }})
    raw = _add(memory_store, "NATO and EU agreed on 12 new sanctions.\n\nMore updates to follow later tonight from the ministers.")

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    assert memory_store.items[raw.id].summary == "NATO and EU agreed on 12 new sanctions."


@pytest.mark.asyncio
async def test_weak_summary_reuses_canonical_item(sample_config, memory_store):
    memory_store.settings["link_enrichment_enabled"] = "true"
    memory_store.settings["canonical_domains"] = '"reuters.com"'
    older = _add(memory_store, "Older post about trams", tg_message_id=99, minutes_ago=600, processed_at=NOW)
    memory_store.items[older.id] = Item(
        raw_message_id=older.id,
        summary="Reuters: 40 trams ordered from Poland for Lviv, deliveries start in May.",
        topic="Transport",
        canonical_url="https://reuters.com/a",
    )
    link = ResolvedLink(url="https://www.reuters.com/a", domain="reuters.com", canonical_url="https://reuters.com/a",
                        title="Trams", content="Lviv orders trams.")
    oracle = FakeOracle(scripted={"orders": {"relevance_score": 0.8, "importance_score": 0.5, "summary": "Trams."}})
    raw = _add(memory_store, "Lviv orders new trams https://www.reuters.com/a")

    await _pipeline(sample_config, memory_store, oracle, link_resolver=FakeLinkResolver([link])).process_next_batch()

    item = memory_store.items[raw.id]
    assert item.summary == "Reuters: 40 trams ordered from Poland for Lviv, deliveries start in May."
    assert item.topic == "Transport"
    assert item.canonical_url == "https://reuters.com/a"


@pytest.mark.asyncio
async def test_links_are_seeded(sample_config, memory_store, fake_oracle):
    seeder = RecordingSeeder()
    raw = _add(memory_store, "Read more at https://example.com/tram-budget about the 120 million tram plan for Lviv.")
    pipeline = _pipeline(sample_config, memory_store, fake_oracle, seeder=seeder)

    await pipeline.process_next_batch()
    await pipeline.drain_background()

    assert seeder.seeded == [(raw.id, ["https://example.com/tram-budget"])]


@pytest.mark.asyncio
async def test_followups_only_for_ready_items(sample_config, memory_store, news_texts):
    sample_config["factcheck"] = {"enabled": True, "api_key": "fc-key", "min_claim_length": 20}
    sample_config["enrichment"] = {"enabled": True}
    oracle = FakeOracle(scripted={"Ukrenergo": {"relevance_score": 0.1, "importance_score": 0.2, "summary": news_texts[2]}})
    ready = _add(memory_store, news_texts[0], tg_message_id=1)
    _add(memory_store, news_texts[2], tg_message_id=2)

    await _pipeline(sample_config, memory_store, oracle).process_next_batch()

    item_id = memory_store.items[ready.id].id
    assert list(memory_store.factchecks) == [item_id]
    assert list(memory_store.enrichments) == [item_id]


@pytest.mark.asyncio
async def test_cancellation_releases_unsettled_claims(sample_config, memory_store):
    class CancelledOracle(FakeOracle):
        async def process_batch(self, *args, **kwargs):
            raise asyncio.CancelledError()

    dropped = _add(memory_store, "🔥🔥🔥", tg_message_id=1)
    news = _add(memory_store, METRO, tg_message_id=2)

    with pytest.raises(asyncio.CancelledError):
        await _pipeline(sample_config, memory_store, CancelledOracle()).process_next_batch()

    assert memory_store.drop_reasons() == {dropped.id: ("emoji_only", "")}
    assert memory_store.released == [news.id]
    assert news.processing_started_at is None


@pytest.mark.asyncio
async def test_tick_recovers_stuck_messages_on_interval(sample_config, memory_store, fake_oracle):
    clock = FakeClock(NOW)
    stuck = _add(memory_store, METRO, processing_started_at=NOW - timedelta(minutes=8))
    pipeline = _pipeline(sample_config, memory_store, fake_oracle, clock=clock)

    await pipeline.tick()
    assert stuck.processed_at is None

    clock.advance(timedelta(minutes=4))
    await pipeline.tick()
    assert stuck.processing_started_at is not None
    assert stuck.processed_at is None

    clock.advance(timedelta(minutes=1))
    await pipeline.tick()
    assert stuck.processed_at is not None
    assert memory_store.items[stuck.id].status == STATUS_READY


@pytest.mark.asyncio
async def test_run_stops_on_event(sample_config, memory_store, fake_oracle):
    raw = _add(memory_store, METRO)
    stop = asyncio.Event()
    pipeline = _pipeline(sample_config, memory_store, fake_oracle)

    async def stop_soon():
        while raw.processed_at is None:
            await asyncio.sleep(0.01)
        stop.set()

    await asyncio.wait_for(asyncio.gather(pipeline.run(stop), stop_soon()), timeout=5)
    assert memory_store.items[raw.id].status == STATUS_READY
