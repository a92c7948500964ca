"""Bullet extraction rules: dedupe, length limits, hashing and scoring."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from chatdigest.models import Bullet, ExtractedBullet, normalize_text

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH_FOR_MULTI_BULLETS = 70


@dataclass
class BulletOutcome:
    """Bullets kept for an item plus the scores they imply."""

    bullets: list[ExtractedBullet] = field(default_factory=list)
    included_count: int = 0
    max_relevance: float = 0.0
    max_importance: float = 0.0

    @property
    def total_count(self) -> int:
        return len(self.bullets)


def bullet_hash(text: str) -> str:
    """Hex of the first 16 bytes of sha256(normalized text)."""
    return hashlib.sha256(normalize_text(text).encode()).digest()[:16].hex()


def dedupe_bullets(bullets: list[ExtractedBullet]) -> list[ExtractedBullet]:
    seen: set[str] = set()
    unique = []
    for bullet in bullets:
        key = normalize_text(bullet.text)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(bullet)
    return unique


def _best_bullet(bullets: list[ExtractedBullet]) -> ExtractedBullet:
    return max(bullets, key=lambda b: (b.importance_score, b.relevance_score))


def apply_length_rules(bullets: list[ExtractedBullet], message: str) -> list[ExtractedBullet]:
    """Keep bullets whose combined length fits inside the source message.

    Short messages keep at most one bullet, the best-scored one.
    """
    if not bullets:
        return []
    limit = len(message.strip())
    if limit < MIN_MESSAGE_LENGTH_FOR_MULTI_BULLETS:
        best = _best_bullet(bullets)
        return [best] if len(best.text) <= limit else []

    kept = []
    used = 0
    for bullet in bullets:
        if used + len(bullet.text) > limit:
            break
        kept.append(bullet)
        used += len(bullet.text)
    return kept


def finalize_bullets(
    extracted: list[ExtractedBullet], message: str, min_importance: float
) -> BulletOutcome:
    bullets = apply_length_rules(dedupe_bullets(extracted), message)
    outcome = BulletOutcome(bullets=bullets)
    for bullet in bullets:
        outcome.max_relevance = max(outcome.max_relevance, bullet.relevance_score)
        outcome.max_importance = max(outcome.max_importance, bullet.importance_score)
        if bullet.importance_score >= min_importance:
            outcome.included_count += 1
    return outcome


def build_bullet_rows(item_id: str, item_topic: str, outcome: BulletOutcome) -> list[Bullet]:
    return [
        Bullet(
            item_id=item_id,
            bullet_index=index,
            text=extracted.text,
            topic=item_topic or extracted.topic,
            relevance_score=extracted.relevance_score,
            importance_score=extracted.importance_score,
            bullet_hash=bullet_hash(extracted.text),
        )
        for index, extracted in enumerate(outcome.bullets)
    ]
