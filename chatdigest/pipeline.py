"""Pipeline driver: claim raw messages and turn them into scored items and bullets."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from chatdigest import metrics
from chatdigest.config import get_pipeline_defaults
from chatdigest.errors import EmbeddingError, OracleError
from chatdigest.followups import FollowUps
from chatdigest.links import BaseLinkResolver, BaseLinkSeeder, augment_text_with_links
from chatdigest.llm.oracle import BaseOracle, BulletInput
from chatdigest.log import new_correlation_id
from chatdigest.models import (
    STATUS_ERROR,
    STATUS_READY,
    STATUS_REJECTED,
    BatchResult,
    Candidate,
    Item,
    RawMessage,
    SummaryCacheEntry,
    utcnow,
)
from chatdigest.process import get_deduplicator
from chatdigest.process.bullet_dedup import run_bullet_dedup
from chatdigest.process.bullets import BulletOutcome, build_bullet_rows, finalize_bullets
from chatdigest.process.embeddings import BaseEmbeddingClient
from chatdigest.process.filters import DROP_RELEVANCE_GATE, Filterer, apply_basic_filters
from chatdigest.process.relevance_gate import RelevanceGate, load_gate_prompt
from chatdigest.process.scoring import (
    apply_relevance_bias,
    calculate_importance,
    candidate_domains,
    channel_rating_bias,
    determine_status,
    irrelevant_penalty,
    max_irrelevant_similarity,
    normalize_results,
    parse_domain_list,
)
from chatdigest.process.text import (
    detect_language,
    extract_urls,
    extract_urls_from_json,
    is_weak_summary,
    needs_translation,
    normalize_language,
    pick_lead_sentence,
    post_process_summary,
    resolve_item_language,
)
from chatdigest.settings import PipelineSettings, SettingsReader
from chatdigest.store import BaseStore
from chatdigest.summarizer import Summarizer

logger = logging.getLogger(__name__)

RECOVERY_INTERVAL = timedelta(minutes=5)
STUCK_MESSAGE_THRESHOLD = timedelta(minutes=10)

SCOPE_RELEVANCE = "relevance"
SCOPE_DEDUP = "dedup"
SCOPE_SUMMARY = "summary"


@dataclass
class BatchState:
    """Mutable state of one batch; never shared across batches."""

    settings: PipelineSettings
    claimed: list[str] = field(default_factory=list)
    # raw ids whose outcome has been written (drop, item or error)
    settled: set[str] = field(default_factory=set)
    seen_hashes: dict[str, str] = field(default_factory=dict)
    bias_cache: dict[str, float] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)

    def count(self, key: str) -> None:
        self.counts[key] = self.counts.get(key, 0) + 1


class Pipeline:
    """One worker's view of the pipeline."""

    def __init__(
        self,
        config: dict,
        store: BaseStore,
        oracle: BaseOracle,
        embedder: BaseEmbeddingClient | None = None,
        link_resolver: BaseLinkResolver | None = None,
        seeder: BaseLinkSeeder | None = None,
        clock=utcnow,
    ):
        self.config = config
        self.store = store
        self.oracle = oracle
        self.embedder = embedder
        self.link_resolver = link_resolver
        self.seeder = seeder
        self.clock = clock
        self.settings_reader = SettingsReader(store, get_pipeline_defaults(config))
        self.summarizer = Summarizer(oracle, store, clock=clock)
        self.followups = FollowUps(store, config)
        self.poll_interval = timedelta(seconds=10)
        self.bullet_dedup_interval = timedelta(minutes=5)
        self._background: set[asyncio.Task] = set()
        self._last_recovery = None
        self._last_bullet_dedup = None

    # --- Main loop ---

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Run until ``stop`` is set or the task is cancelled."""
        stop = stop or asyncio.Event()
        now = self.clock()
        self._last_recovery = now
        self._last_bullet_dedup = now
        logger.info("Pipeline worker started")
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval.total_seconds())
            except asyncio.TimeoutError:
                pass
        await self.drain_background()
        logger.info("Pipeline worker stopped")

    async def tick(self) -> None:
        """Periodic tasks that are due, then one batch."""
        now = self.clock()
        if self._last_recovery is None or now - self._last_recovery >= RECOVERY_INTERVAL:
            await self.recover_stuck()
            self._last_recovery = now
        if self._last_bullet_dedup is None or now - self._last_bullet_dedup >= self.bullet_dedup_interval:
            await self.dedup_bullets()
            self._last_bullet_dedup = now

        cid = new_correlation_id()
        logger.info("Starting pipeline batch %s", cid)
        try:
            await self.process_next_batch()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to process batch %s", cid)

    async def recover_stuck(self) -> int:
        try:
            recovered = await self.store.recover_stuck(STUCK_MESSAGE_THRESHOLD, self.clock())
        except Exception:
            logger.exception("Failed to recover stuck pipeline messages")
            return 0
        if recovered:
            metrics.stuck_recovered_total.inc(recovered)
            logger.info("Recovered %d stuck pipeline messages", recovered)
        return recovered

    async def dedup_bullets(self) -> dict[str, int]:
        settings = await self.settings_reader.load()
        self.bullet_dedup_interval = settings.bullet_dedup_interval
        try:
            return await run_bullet_dedup(
                self.store,
                threshold=settings.bullet_dedup_threshold,
                lookback_hours=settings.bullet_dedup_lookback_hours,
                now=self.clock(),
            )
        except Exception:
            logger.exception("Bullet deduplication failed")
            return {"duplicates": 0, "canonical": 0}

    async def drain_background(self) -> None:
        """Wait for fire-and-forget tasks (bullet embeddings, link seeding)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- One batch ---

    async def process_next_batch(self) -> int:
        """Claim and process one batch; returns the number of claimed messages."""
        settings = await self.settings_reader.load()
        self.poll_interval = settings.poll_interval
        self.bullet_dedup_interval = settings.bullet_dedup_interval

        messages = await self.store.claim_unprocessed(settings.batch_size, self.clock())
        try:
            metrics.backlog_messages.set(await self.store.count_backlog())
        except Exception:
            logger.warning("Failed to count backlog", exc_info=True)
        if not messages:
            logger.debug("No unprocessed messages")
            return 0

        state = BatchState(settings=settings, claimed=[m.id for m in messages])
        started = time.monotonic()
        try:
            candidates = await self.prepare_candidates(messages, state)
            if candidates:
                results, cached = await self.summarizer.summarize(candidates, settings)
                await self.store_results(candidates, results, cached, state)
        except asyncio.CancelledError:
            await self._release_unsettled(state)
            raise
        finally:
            metrics.batch_duration_seconds.observe(time.monotonic() - started)

        logger.info(
            "Batch done: %d claimed, %s",
            len(messages),
            ", ".join(f"{k}={v}" for k, v in sorted(state.counts.items())) or "nothing stored",
        )
        return len(messages)

    async def _release_unsettled(self, state: BatchState) -> None:
        pending = [raw_id for raw_id in state.claimed if raw_id not in state.settled]
        logger.warning("Cancelled, releasing %d claimed messages", len(pending))
        for raw_id in pending:
            try:
                await asyncio.shield(self.store.release_claim(raw_id))
            except Exception:
                logger.warning("Failed to release claim %s", raw_id, exc_info=True)

    async def _mark_processed(self, raw_id: str, state: BatchState) -> None:
        state.settled.add(raw_id)
        try:
            await self.store.mark_processed(raw_id)
        except Exception:
            logger.error("Failed to mark %s processed", raw_id, exc_info=True)

    async def _release(self, raw_id: str, state: BatchState) -> None:
        state.settled.add(raw_id)
        try:
            await self.store.release_claim(raw_id)
        except Exception:
            logger.error("Failed to release claim %s", raw_id, exc_info=True)

    async def record_drop(self, raw_id: str, reason: str, detail: str, state: BatchState) -> None:
        try:
            await self.store.save_drop_log(raw_id, reason, detail)
        except Exception:
            logger.warning("Failed to save drop log for %s", raw_id, exc_info=True)
        metrics.messages_dropped_total.labels(reason=reason).inc()
        state.count(f"dropped_{reason}")
        await self._mark_processed(raw_id, state)

    # --- Candidate preparation ---

    async def _load_filterer(self, settings: PipelineSettings) -> Filterer:
        try:
            rules = await self.store.get_active_filters()
        except Exception:
            logger.warning("Failed to load active filters", exc_info=True)
            rules = []
        return Filterer(rules, settings.filters_ads, settings.ads_keywords, settings.filters_mode)

    async def _load_gate(self, settings: PipelineSettings) -> RelevanceGate | None:
        if not settings.relevance_gate_enabled:
            return None
        prompt, version = await load_gate_prompt(self.settings_reader)
        return RelevanceGate(self.oracle, prompt, version)

    async def prepare_candidates(self, messages: list[RawMessage], state: BatchState) -> list[Candidate]:
        settings = state.settings
        filterer = await self._load_filterer(settings)
        gate = await self._load_gate(settings)
        deduplicator = get_deduplicator(settings.dedup_mode, self.store, settings, self.clock)

        accepted: list[Candidate] = []
        for msg in messages:
            decision = apply_basic_filters(msg, settings, filterer, state.seen_hashes)
            if decision.dropped:
                logger.info("Dropping %s: %s %s", msg.id, decision.drop_reason, decision.drop_detail)
                await self.record_drop(msg.id, decision.drop_reason, decision.drop_detail, state)
                continue
            if msg.canonical_hash:
                state.seen_hashes[msg.canonical_hash] = msg.id

            candidate = await self.enrich(msg, decision.text, decision.preview, settings)

            if gate is not None:
                text = candidate.text
                if settings.link_scope(SCOPE_RELEVANCE):
                    text = augment_text_with_links(text, candidate.links)
                verdict = await gate.evaluate(text, settings)
                try:
                    await self.store.save_relevance_gate_log(msg.id, verdict)
                except Exception:
                    logger.warning("Failed to save relevance gate log for %s", msg.id, exc_info=True)
                if not verdict.relevant:
                    logger.info("Relevance gate dropped %s: %s", msg.id, verdict.reason)
                    await self.record_drop(msg.id, DROP_RELEVANCE_GATE, verdict.reason, state)
                    continue

            if settings.dedup_mode == "semantic" and self.embedder is not None:
                try:
                    candidate.embedding = await self.embedder.get_embedding(self._embedding_text(candidate, settings))
                except EmbeddingError as exc:
                    logger.error("Embedding failed for %s, releasing claim: %s", msg.id, exc)
                    await self._release(msg.id, state)
                    continue

            try:
                duplicate = await deduplicator.check(candidate, accepted)
            except Exception:
                logger.error("Duplicate check failed for %s", msg.id, exc_info=True)
                duplicate = None
            if duplicate:
                reason, dup_id = duplicate
                logger.info("Dropping duplicate %s of %s (%s)", msg.id, dup_id, reason)
                await self.record_drop(msg.id, reason, dup_id, state)
                continue

            accepted.append(candidate)
        return accepted

    async def enrich(self, msg: RawMessage, text: str, preview: str, settings: PipelineSettings) -> Candidate:
        """Attach channel context and resolved links."""
        candidate = Candidate(raw=msg, text=text, preview_text=preview)
        candidate.links_in_prompt = settings.link_scope(SCOPE_SUMMARY)

        if settings.channel_context_limit > 0:
            try:
                candidate.channel_context = await self.store.get_recent_channel_messages(
                    msg.channel_id, msg.tg_date, settings.channel_context_limit,
                )
            except Exception:
                logger.warning("Failed to fetch channel context for %s", msg.id, exc_info=True)

        extra_urls = extract_urls_from_json(msg.entities_json) + extract_urls_from_json(msg.media_json)
        if settings.link_enrichment_enabled and self.link_resolver is not None:
            try:
                candidate.links = await self.link_resolver.resolve_links(
                    msg.text,
                    settings.max_links_per_message,
                    settings.link_cache_ttl,
                    settings.tg_link_cache_ttl,
                    extra_urls=extra_urls,
                )
            except Exception:
                logger.warning("Link enrichment failed for %s", msg.id, exc_info=True)

        if self.seeder is not None:
            urls = extract_urls(msg.text) + extra_urls
            if urls:
                self._spawn(self._seed_links(msg.id, urls))
        return candidate

    async def _seed_links(self, raw_id: str, urls: list[str]) -> None:
        try:
            await self.seeder.seed(raw_id, urls)
        except Exception:
            logger.warning("Link seeding failed for %s", raw_id, exc_info=True)

    @staticmethod
    def _embedding_text(candidate: Candidate, settings: PipelineSettings) -> str:
        if settings.link_scope(SCOPE_DEDUP) and candidate.links:
            return augment_text_with_links(candidate.text, candidate.links)
        return candidate.text

    # --- Result processing ---

    async def _channel_stats(self, settings: PipelineSettings) -> dict:
        if not settings.normalize_scores:
            return {}
        try:
            return await self.store.get_channel_stats()
        except Exception:
            logger.warning("Failed to fetch channel stats, skipping normalization", exc_info=True)
            return {}

    async def _canonical_summary(self, candidate: Candidate, settings: PipelineSettings) -> Item | None:
        trusted = parse_domain_list(settings.canonical_domains)
        if not trusted:
            return None
        for link in candidate.links:
            if not link.canonical_url or link.domain not in trusted:
                continue
            try:
                item = await self.store.get_item_by_canonical_url(link.canonical_url, candidate.raw.id)
            except Exception:
                logger.warning("Failed to resolve canonical item for %s", candidate.raw.id, exc_info=True)
                return None
            if item is not None and item.summary.strip():
                logger.info("Reusing summary of item %s for %s", item.id, candidate.raw.id)
                return item
        return None

    async def _extract_bullets(
        self, candidate: Candidate, res: BatchResult, settings: PipelineSettings
    ) -> BulletOutcome:
        message = candidate.text.strip() or candidate.preview_text.strip()
        try:
            extracted = await self.oracle.extract_bullets(
                BulletInput(
                    text=candidate.text,
                    preview=candidate.preview_text,
                    summary=res.summary,
                    relevance_score=res.relevance_score,
                    importance_score=res.importance_score,
                    max_bullets=settings.bullet_batch_size,
                ),
                settings.digest_language,
            )
        except OracleError as exc:
            logger.warning("Bullet extraction failed for %s: %s", candidate.raw.id, exc)
            return BulletOutcome()
        return finalize_bullets(extracted, message, settings.bullet_min_importance)

    async def _translate(self, item: Item, settings: PipelineSettings) -> str:
        target = normalize_language(settings.digest_language)
        detected = detect_language(item.summary) or item.language
        if not needs_translation(item.summary, detected, target):
            return item.summary
        try:
            translated = await self.oracle.translate_text(item.summary, target)
        except OracleError as exc:
            logger.warning("Translation failed for %s: %s", item.raw_message_id, exc)
            return item.summary
        return translated.strip() or item.summary

    async def _fail_item(self, raw_id: str, error: str, state: BatchState) -> None:
        state.settled.add(raw_id)
        metrics.messages_processed_total.labels(status=STATUS_ERROR).inc()
        state.count(STATUS_ERROR)
        try:
            await self.store.save_item_error(raw_id, error)
        except Exception:
            logger.warning("Failed to save item error for %s", raw_id, exc_info=True)
        await self._mark_processed(raw_id, state)

    async def store_results(
        self,
        candidates: list[Candidate],
        results: list[BatchResult | None],
        cached: list[bool],
        state: BatchState,
    ) -> None:
        settings = state.settings
        base_scores = [
            (res.relevance_score, res.importance_score) if res is not None else (0.0, 0.0)
            for res in results
        ]
        stats = await self._channel_stats(settings)
        if stats:
            normalize_results(results, candidates, stats)
        allowlist = parse_domain_list(settings.domain_allowlist)
        denylist = parse_domain_list(settings.domain_denylist)

        for i, (cand, res) in enumerate(zip(candidates, results)):
            raw = cand.raw
            if res is None:
                # no answer for this message; let a later claim retry it
                if raw.id not in state.settled:
                    await self._release(raw.id, state)
                continue

            language, language_source = resolve_item_language(raw.text, cand.preview_text, res.language)
            phrases = settings.strip_phrases_for(language)
            summary = post_process_summary(res.summary, phrases, settings.summary_max_chars)
            topic = res.topic

            if is_weak_summary(summary):
                canonical = await self._canonical_summary(cand, settings)
                if canonical is not None:
                    summary = post_process_summary(canonical.summary, phrases, settings.summary_max_chars)
                    topic = canonical.topic or topic
                    language = canonical.language or language

            if not summary or is_weak_summary(summary):
                lead = pick_lead_sentence(cand.text)
                if lead:
                    summary = post_process_summary(lead, phrases, settings.summary_max_chars)

            if not summary:
                logger.warning("Empty summary for %s, marking as error", raw.id)
                await self._fail_item(raw.id, "empty summary from LLM", state)
                continue

            relevance, importance = res.relevance_score, res.importance_score
            outcome = BulletOutcome()
            if settings.bullet_mode_enabled:
                res.summary = summary
                outcome = await self._extract_bullets(cand, res, settings)
                if outcome.bullets:
                    relevance, importance = outcome.max_relevance, outcome.max_importance

            bias = await channel_rating_bias(self.store, raw.channel_id, state.bias_cache, self.clock())
            if bias:
                metrics.channel_bias_applied_total.inc()
                relevance = apply_relevance_bias(relevance, bias)

            similarity = await max_irrelevant_similarity(self.store, cand.embedding, self.clock())
            relevance, importance, force_reject = irrelevant_penalty(relevance, importance, similarity)

            item = Item(
                raw_message_id=raw.id,
                relevance_score=relevance,
                importance_score=calculate_importance(
                    importance,
                    raw.importance_weight,
                    summary,
                    candidate_domains(cand),
                    allowlist,
                    denylist,
                    bias,
                ),
                topic=topic,
                summary=summary,
                language=language,
                language_source=language_source,
                status=determine_status(relevance, settings.relevance_threshold, raw),
                first_seen_at=raw.tg_date,
            )
            if outcome.bullets:
                item.bullet_total_count = outcome.total_count
                item.bullet_included_count = outcome.included_count
                if outcome.included_count == 0:
                    item.status = STATUS_REJECTED
            if force_reject:
                logger.info("Rejecting %s: similar to an item rated irrelevant (%.3f)", raw.id, similarity)
                item.status = STATUS_REJECTED
                item.relevance_score = 0.0
                item.importance_score = 0.0
            canonical_links = [link.canonical_url for link in cand.links if link.canonical_url]
            if canonical_links:
                item.canonical_url = canonical_links[0]

            if item.status == STATUS_READY:
                translated = await self._translate(item, settings)
                target = normalize_language(settings.digest_language) or settings.digest_language
                item.summary = post_process_summary(
                    translated, settings.strip_phrases_for(target), settings.summary_max_chars,
                ) or item.summary

            await self.persist(cand, item, outcome, state)
            if item.status != STATUS_ERROR:
                await self.summarizer.store_cache(cand, settings.digest_language, SummaryCacheEntry(
                    canonical_hash="",
                    digest_language=settings.digest_language,
                    summary=item.summary,
                    topic=item.topic,
                    language=item.language,
                    relevance_score=base_scores[i][0],
                    importance_score=base_scores[i][1],
                ))

    async def persist(self, cand: Candidate, item: Item, outcome: BulletOutcome, state: BatchState) -> None:
        """Write the item, its embedding and bullets, then settle the raw message."""
        raw = cand.raw
        state.settled.add(raw.id)
        try:
            await self.store.save_item(item)
        except Exception as exc:
            logger.error("Failed to save item for %s: %s", raw.id, exc)
            item.status = STATUS_ERROR
            await self._fail_item(raw.id, f"failed to save item: {exc}", state)
            return

        if cand.embedding:
            try:
                await self.store.save_embedding(item.id, cand.embedding)
            except Exception:
                logger.error("Failed to save embedding for item %s", item.id, exc_info=True)

        if item.status == STATUS_READY and outcome.bullets:
            for bullet in build_bullet_rows(item.id, item.topic, outcome):
                try:
                    await self.store.insert_bullet(bullet)
                except Exception:
                    logger.warning("Failed to insert bullet %d of item %s", bullet.bullet_index, item.id, exc_info=True)
                    continue
                if self.embedder is not None:
                    self._spawn(self._embed_bullet(bullet.id, bullet.text))

        await self._mark_processed(raw.id, state)
        metrics.messages_processed_total.labels(status=item.status).inc()
        metrics.message_age_seconds.observe(max(0.0, (self.clock() - raw.tg_date).total_seconds()))
        state.count(item.status)

        await self.followups.enqueue_factcheck(item)
        await self.followups.enqueue_enrichment(item)

    async def _embed_bullet(self, bullet_id: str, text: str) -> None:
        try:
            embedding = await self.embedder.get_embedding(text)
            if embedding:
                await self.store.update_bullet_embedding(bullet_id, embedding)
        except Exception:
            logger.warning("Failed to embed bullet %s", bullet_id, exc_info=True)
