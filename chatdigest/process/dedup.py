"""Strict (hash) and semantic (embedding) deduplicators."""

from __future__ import annotations

import logging

from chatdigest.models import Candidate
from chatdigest.process import register_deduplicator
from chatdigest.process.base import BaseDeduplicator
from chatdigest.process.embeddings import cosine_similarity
from chatdigest.process.filters import (
    DROP_DEDUP_SEMANTIC_BATCH,
    DROP_DEDUP_SEMANTIC_GLOBAL,
    DROP_DEDUP_SEMANTIC_SAME_CHANNEL,
    DROP_DEDUP_STRICT_GLOBAL,
)

logger = logging.getLogger(__name__)

SAME_CHANNEL_SIMILARITY_MIN = 0.85


@register_deduplicator("strict")
class StrictDeduplicator(BaseDeduplicator):
    """Drop messages whose canonical hash already produced an item."""

    @property
    def name(self) -> str:
        return "strict"

    async def check(self, candidate, accepted):
        dup_id = await self.store.check_strict_duplicate(
            candidate.raw.canonical_hash, candidate.raw.id,
        )
        if dup_id:
            return DROP_DEDUP_STRICT_GLOBAL, dup_id
        return None


@register_deduplicator("semantic")
class SemanticDeduplicator(BaseDeduplicator):
    """Compare embeddings against the batch, the channel's recent items, then all recent items."""

    @property
    def name(self) -> str:
        return "semantic"

    def find_in_batch(self, candidate: Candidate, accepted: list[Candidate]) -> str | None:
        threshold = self.settings.cluster_similarity_threshold
        for other in accepted:
            if not other.embedding:
                continue
            if cosine_similarity(candidate.embedding, other.embedding) > threshold:
                return other.raw.id
        return None

    async def check(self, candidate, accepted):
        if not candidate.embedding:
            return None

        dup_id = self.find_in_batch(candidate, accepted)
        if dup_id:
            return DROP_DEDUP_SEMANTIC_BATCH, dup_id

        now = self.clock()
        threshold = self.settings.cluster_similarity_threshold

        channel_threshold = max(threshold, SAME_CHANNEL_SIMILARITY_MIN)
        dup_id = await self.store.find_similar_item_for_channel(
            candidate.embedding,
            candidate.raw.channel_id,
            channel_threshold,
            now - self.settings.dedup_same_channel_window,
        )
        if dup_id:
            return DROP_DEDUP_SEMANTIC_SAME_CHANNEL, dup_id

        dup_id = await self.store.find_similar_item(
            candidate.embedding, threshold, now - self.settings.dedup_window,
        )
        if dup_id:
            return DROP_DEDUP_SEMANTIC_GLOBAL, dup_id
        return None
