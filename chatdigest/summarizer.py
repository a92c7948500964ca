"""Oracle orchestration: cache bypass, per-model batches and tiered re-analysis."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import timedelta

from chatdigest.errors import OracleError, OracleTimeoutError
from chatdigest.llm.oracle import TASK_SUMMARIZE, TASK_SUMMARIZE_TIERED, BaseOracle
from chatdigest.models import BatchResult, Candidate, SummaryCacheEntry, utcnow
from chatdigest.process.text import normalize_language
from chatdigest.settings import PipelineSettings
from chatdigest.store import BaseStore

logger = logging.getLogger(__name__)

SUMMARY_PROMPT_VERSION = "v1"
ORACLE_BATCH_TIMEOUT = 300
TIERED_IMPORTANCE_MIN = 0.8
SUMMARY_CACHE_MAX_AGE = timedelta(days=30)


def summary_cache_key(canonical_hash: str, prompt_version: str, preview: str = "") -> str:
    """``hash:version`` plus ``:sha256(preview)`` when the message has a preview."""
    base = (canonical_hash or "").strip()
    if not base:
        return ""
    version = (prompt_version or "").strip() or SUMMARY_PROMPT_VERSION
    preview = (preview or "").strip()
    if not preview:
        return f"{base}:{version}"
    return f"{base}:{version}:{hashlib.sha256(preview.encode()).hexdigest()}"


def candidate_cache_key(candidate: Candidate, prompt_version: str = SUMMARY_PROMPT_VERSION) -> str:
    return summary_cache_key(candidate.raw.canonical_hash, prompt_version, candidate.preview_text)


class Summarizer:
    """Runs the summarize task for a batch of candidates.

    Results come back aligned with the input: ``results[i]`` belongs to
    ``candidates[i]`` and is None when no answer could be obtained.
    """

    def __init__(
        self,
        oracle: BaseOracle,
        store: BaseStore,
        prompt_version: str = SUMMARY_PROMPT_VERSION,
        timeout: float = ORACLE_BATCH_TIMEOUT,
        clock=utcnow,
    ):
        self.oracle = oracle
        self.store = store
        self.prompt_version = prompt_version
        self.timeout = timeout
        self.clock = clock

    async def lookup_cache(self, candidate: Candidate, digest_language: str) -> SummaryCacheEntry | None:
        key = candidate_cache_key(candidate, self.prompt_version)
        if not key:
            return None
        lang = normalize_language(digest_language) or digest_language
        try:
            entry = await self.store.get_summary_cache(key, lang)
            if entry is None and not candidate.preview_text.strip():
                entry = await self.store.get_summary_cache(candidate.raw.canonical_hash, lang)
        except Exception:
            logger.warning("Failed to load summary cache for %s", candidate.raw.id, exc_info=True)
            return None
        if entry is None or not entry.summary.strip():
            return None
        if self.clock() - entry.updated_at > SUMMARY_CACHE_MAX_AGE:
            return None
        return entry

    async def store_cache(self, candidate: Candidate, digest_language: str, entry: SummaryCacheEntry) -> None:
        key = candidate_cache_key(candidate, self.prompt_version)
        if not key or not entry.summary.strip():
            return
        entry.canonical_hash = key
        entry.digest_language = normalize_language(digest_language) or digest_language
        try:
            await self.store.upsert_summary_cache(entry)
        except Exception:
            logger.warning("Failed to upsert summary cache for %s", candidate.raw.id, exc_info=True)

    def group_by_model(
        self, candidates: list[Candidate], cached: list[bool], settings: PipelineSettings
    ) -> dict[str, list[int]]:
        """Indices of uncached candidates per model hint; '' lets the task routing pick."""
        groups: dict[str, list[int]] = {}
        for i, cand in enumerate(candidates):
            if cached[i]:
                continue
            model = ""
            if settings.vision_routing_enabled and settings.vision_model and cand.raw.media_blob:
                model = settings.vision_model
            cand.model = model
            groups.setdefault(model, []).append(i)
        return groups

    async def _call_batch(
        self, group: list[Candidate], settings: PipelineSettings, model: str, task: str
    ) -> list[BatchResult]:
        try:
            return await asyncio.wait_for(
                self.oracle.process_batch(
                    group,
                    settings.digest_language,
                    model_hint=model,
                    tone=settings.digest_tone,
                    task=task,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OracleTimeoutError(f"{task} batch of {len(group)} timed out after {self.timeout}s") from exc

    async def process_group(
        self,
        candidates: list[Candidate],
        results: list[BatchResult | None],
        model: str,
        indices: list[int],
        settings: PipelineSettings,
    ) -> None:
        """Fill ``results`` for one model group; releases the group's claims on failure."""
        group = [candidates[i] for i in indices]
        try:
            answers = await self._call_batch(group, settings, model, TASK_SUMMARIZE)
        except Exception as exc:
            for i in indices:
                try:
                    await self.store.release_claim(candidates[i].raw.id)
                except Exception:
                    logger.warning("Failed to release claim %s", candidates[i].raw.id, exc_info=True)
            if isinstance(exc, OracleError):
                raise
            raise OracleError(f"batch processing for model {model or 'default'!r} failed: {exc}") from exc

        if len(answers) != len(indices):
            logger.warning(
                "Oracle returned %d results for %d messages (model %r), mapping by position",
                len(answers), len(indices), model,
            )
        for position, i in enumerate(indices):
            if position < len(answers):
                answers[position].index = i
                results[i] = answers[position]

    async def reanalyze_tiered(
        self,
        candidates: list[Candidate],
        results: list[BatchResult | None],
        cached: list[bool],
        settings: PipelineSettings,
    ) -> int:
        """Second pass for high-importance results; returns how many were replaced."""
        if not settings.tiered_importance_enabled:
            return 0
        indices = [
            i for i, res in enumerate(results)
            if res is not None and not cached[i] and res.importance_score > TIERED_IMPORTANCE_MIN
        ]
        if not indices:
            return 0

        logger.info("Tiered re-analysis of %d high-importance messages", len(indices))
        try:
            answers = await self._call_batch(
                [candidates[i] for i in indices],
                settings,
                settings.tiered_importance_model,
                TASK_SUMMARIZE_TIERED,
            )
        except Exception as exc:
            logger.warning("Tiered re-analysis failed, keeping first-pass results: %s", exc)
            return 0
        if len(answers) != len(indices):
            logger.warning(
                "Tiered re-analysis returned %d results for %d messages, keeping first-pass results",
                len(answers), len(indices),
            )
            return 0
        for answer, i in zip(answers, indices):
            answer.index = i
            results[i] = answer
        return len(indices)

    async def summarize(
        self, candidates: list[Candidate], settings: PipelineSettings
    ) -> tuple[list[BatchResult | None], list[bool]]:
        """Return (results, cached) aligned with ``candidates``."""
        results: list[BatchResult | None] = [None] * len(candidates)
        cached = [False] * len(candidates)

        for i, cand in enumerate(candidates):
            entry = await self.lookup_cache(cand, settings.digest_language)
            if entry is None:
                continue
            results[i] = BatchResult(
                index=i,
                relevance_score=entry.relevance_score,
                importance_score=entry.importance_score,
                topic=entry.topic,
                summary=entry.summary,
                language=entry.language,
            )
            cached[i] = True
        if any(cached):
            logger.info("Summary cache hits: %d of %d", sum(cached), len(candidates))

        for model, indices in self.group_by_model(candidates, cached, settings).items():
            try:
                await self.process_group(candidates, results, model, indices, settings)
            except OracleError as exc:
                logger.error("Oracle batch failed for %d messages, claims released: %s", len(indices), exc)

        await self.reanalyze_tiered(candidates, results, cached, settings)
        return results, cached
