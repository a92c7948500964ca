"""Enqueue policies for the fact-check and source-enrichment queues."""

from __future__ import annotations

import logging

from chatdigest import metrics
from chatdigest.config import get_enrichment_config, get_factcheck_config
from chatdigest.models import STATUS_READY, Item, normalize_text
from chatdigest.process.text import collapse_whitespace, split_sentences, strip_html
from chatdigest.store import BaseStore

logger = logging.getLogger(__name__)

MAX_CLAIM_LENGTH = 300


def extract_claim(summary: str) -> str:
    """First sentence of the plain-text summary, capped in length."""
    plain = collapse_whitespace(strip_html(summary))
    if not plain:
        return ""
    sentences = split_sentences(plain)
    claim = sentences[0] if sentences else plain
    return claim[:MAX_CLAIM_LENGTH].strip()


class FollowUps:
    """Decides whether a stored item feeds the downstream queues."""

    def __init__(self, store: BaseStore, config: dict):
        self.store = store
        self.factcheck = get_factcheck_config(config)
        self.enrichment = get_enrichment_config(config)

    async def enqueue_factcheck(self, item: Item) -> bool:
        cfg = self.factcheck
        if not cfg["enabled"] or not cfg["api_key"] or item.status != STATUS_READY:
            return False
        claim = extract_claim(item.summary)
        if len(claim) < cfg["min_claim_length"]:
            return False
        normalized = normalize_text(claim)
        if not normalized:
            return False
        try:
            if await self.store.count_pending_factchecks() >= cfg["queue_max"]:
                metrics.queue_enqueue_total.labels(queue="factcheck", outcome="full").inc()
                return False
            added = await self.store.enqueue_factcheck(item.id, claim, normalized)
        except Exception:
            logger.warning("Fact-check enqueue failed for item %s", item.id, exc_info=True)
            metrics.queue_enqueue_total.labels(queue="factcheck", outcome="error").inc()
            return False
        metrics.queue_enqueue_total.labels(
            queue="factcheck", outcome="queued" if added else "exists",
        ).inc()
        return added

    async def enqueue_enrichment(self, item: Item) -> bool:
        cfg = self.enrichment
        if not cfg["enabled"] or item.status != STATUS_READY or not item.summary.strip():
            return False
        try:
            pending = await self.store.count_pending_enrichments()
        except Exception:
            logger.warning("Enrichment queue count failed, assuming capacity", exc_info=True)
            pending = 0
        if pending >= cfg["queue_max"]:
            metrics.queue_enqueue_total.labels(queue="enrichment", outcome="full").inc()
            return False
        try:
            added = await self.store.enqueue_enrichment(item.id, item.summary)
        except Exception:
            logger.warning("Enrichment enqueue failed for item %s", item.id, exc_info=True)
            metrics.queue_enqueue_total.labels(queue="enrichment", outcome="error").inc()
            return False
        metrics.queue_enqueue_total.labels(
            queue="enrichment", outcome="queued" if added else "exists",
        ).inc()
        return added
