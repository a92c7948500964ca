"""Cross-item bullet deduplication against a rolling canonical pool."""

from __future__ import annotations

import logging
from datetime import datetime

from chatdigest import metrics
from chatdigest.models import BULLET_DUPLICATE, BULLET_PENDING, Bullet
from chatdigest.process.embeddings import cosine_similarity
from chatdigest.store import BaseStore

logger = logging.getLogger(__name__)

DEFAULT_BULLET_DEDUP_THRESHOLD = 0.92
DEFAULT_LOOKBACK_HOURS = 48


def find_bullet_duplicates(bullets: list[Bullet], threshold: float) -> dict[str, str]:
    """Map duplicate bullet id -> canonical bullet id.

    ``bullets`` must be ordered canonical-first (ready, then pending, each by
    importance). Only pending bullets can become duplicates, and bullets of
    the same item never match each other.
    """
    duplicates: dict[str, str] = {}
    for i, bullet in enumerate(bullets):
        if not bullet.embedding or bullet.id in duplicates:
            continue
        for other in bullets[i + 1:]:
            if other.item_id == bullet.item_id or other.id in duplicates:
                continue
            if other.status != BULLET_PENDING or not other.embedding:
                continue
            if cosine_similarity(bullet.embedding, other.embedding) >= threshold:
                duplicates[other.id] = bullet.id
    return duplicates


async def run_bullet_dedup(
    store: BaseStore,
    threshold: float = DEFAULT_BULLET_DEDUP_THRESHOLD,
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
    now: datetime | None = None,
) -> dict[str, int]:
    """One pass: mark pending duplicates, promote the remaining pending bullets."""
    bullets = await store.get_bullets_for_dedup(lookback_hours, now)
    pending = [b for b in bullets if b.status == BULLET_PENDING]
    if not pending:
        return {"duplicates": 0, "canonical": 0}

    duplicates = find_bullet_duplicates(bullets, threshold)
    for dup_id, canonical_id in duplicates.items():
        await store.mark_bullet_duplicate(dup_id, canonical_id)

    promoted = 0
    for bullet in pending:
        if bullet.id in duplicates:
            bullet.status = BULLET_DUPLICATE
            continue
        await store.mark_bullet_canonical(bullet.id)
        promoted += 1

    metrics.bullet_dedup_total.labels(outcome="duplicate").inc(len(duplicates))
    metrics.bullet_dedup_total.labels(outcome="canonical").inc(promoted)
    logger.info(
        "Bullet dedup: %d pending, %d duplicates, %d canonical",
        len(pending), len(duplicates), promoted,
    )
    return {"duplicates": len(duplicates), "canonical": promoted}
