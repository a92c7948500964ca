"""Score math: clamping, importance, biases, normalization and status."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

from chatdigest import metrics
from chatdigest.models import (
    STATUS_READY,
    STATUS_REJECTED,
    BatchResult,
    Candidate,
    ChannelStats,
    RatingSummary,
    RawMessage,
    utcnow,
)
from chatdigest.process.text import extract_domain, extract_urls, has_unique_info

logger = logging.getLogger(__name__)

CHANNEL_WEIGHT_MIN = 0.1
CHANNEL_WEIGHT_MAX = 2.0
CHANNEL_WEIGHT_DEFAULT = 1.0
UNIQUE_INFO_PENALTY = 0.2
DOMAIN_BIAS = 0.05
NORMALIZATION_STDDEV_MIN = 0.01

ANNOTATION_BIAS_LOOKBACK_DAYS = 30
ANNOTATION_BIAS_HALF_LIFE_DAYS = 14
ANNOTATION_BIAS_MIN_RATINGS = 5
ANNOTATION_BIAS_SCALE = 0.1
ANNOTATION_BIAS_MAX = 0.1
ANNOTATION_BIAS_RELEVANCE_FACTOR = 0.5

IRRELEVANT_SIMILARITY_LOOKBACK_DAYS = 30
IRRELEVANT_SIMILARITY_PENALTY_MIN = 0.85
IRRELEVANT_SIMILARITY_REJECT_MIN = 0.95
IRRELEVANT_IMPORTANCE_PENALTY = 0.2
IRRELEVANT_RELEVANCE_PENALTY = 0.2

_DOMAIN_SPLIT_RE = re.compile(r"[\s,;]+")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_score(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def parse_domain_list(raw: str) -> set[str]:
    """Comma or whitespace separated domains, lowercased, without www."""
    domains = set()
    for part in _DOMAIN_SPLIT_RE.split(raw or ""):
        part = part.strip().lower()
        if not part:
            continue
        domain = extract_domain(part) if ("/" in part or ":" in part) else part
        if domain.startswith("www."):
            domain = domain[4:]
        if domain:
            domains.add(domain)
    return domains


def channel_weight(weight: float) -> float:
    if weight < CHANNEL_WEIGHT_MIN:
        return CHANNEL_WEIGHT_DEFAULT
    return min(weight, CHANNEL_WEIGHT_MAX)


def candidate_domains(candidate: Candidate) -> list[str]:
    """Domains of resolved links, else of URLs found in the text."""
    domains = [link.domain or extract_domain(link.url) for link in candidate.links]
    domains = [d.lower().removeprefix("www.") for d in domains if d]
    if domains:
        return domains
    return [d for d in (extract_domain(u) for u in extract_urls(candidate.raw.text)) if d]


def apply_domain_bias(importance: float, domains: list[str], allowlist: set[str], denylist: set[str]) -> float:
    if any(d in denylist for d in domains):
        importance -= DOMAIN_BIAS
    if any(d in allowlist for d in domains):
        importance += DOMAIN_BIAS
    return clamp_score(importance)


def calculate_importance(
    base: float,
    weight: float,
    summary: str,
    domains: list[str],
    allowlist: set[str],
    denylist: set[str],
    bias: float = 0.0,
) -> float:
    """Final importance: channel weight, unique-info penalty, domain and channel bias."""
    importance = min(clamp_score(base) * channel_weight(weight), 1.0)
    if not has_unique_info(summary):
        importance = max(importance - UNIQUE_INFO_PENALTY, 0.0)
    importance = apply_domain_bias(importance, domains, allowlist, denylist)
    return clamp_score(importance + bias)


def rating_bias(summary: RatingSummary | None) -> float:
    """Bias in [-max, +max] from decay-weighted channel ratings; 0 when too few."""
    if summary is None or summary.total_count < ANNOTATION_BIAS_MIN_RATINGS:
        return 0.0
    if summary.weighted_total <= 0:
        return 0.0
    score = (
        summary.weighted_good - (summary.weighted_bad + summary.weighted_irrelevant)
    ) / summary.weighted_total
    return clamp(score * ANNOTATION_BIAS_SCALE, -ANNOTATION_BIAS_MAX, ANNOTATION_BIAS_MAX)


async def channel_rating_bias(
    store, channel_id: str, cache: dict[str, float], now: datetime | None = None
) -> float:
    """Per-batch cached rating bias for a channel; read errors count as no bias."""
    if channel_id in cache:
        return cache[channel_id]
    now = now or utcnow()
    since = now - timedelta(days=ANNOTATION_BIAS_LOOKBACK_DAYS)
    try:
        summary = await store.get_weighted_rating_summary(
            channel_id, since, ANNOTATION_BIAS_HALF_LIFE_DAYS, now,
        )
    except Exception:
        logger.warning("Failed to load rating summary for channel %s", channel_id, exc_info=True)
        summary = None
    cache[channel_id] = rating_bias(summary)
    return cache[channel_id]


def apply_relevance_bias(relevance: float, bias: float) -> float:
    return clamp_score(relevance + bias * ANNOTATION_BIAS_RELEVANCE_FACTOR)


def irrelevant_penalty(relevance: float, importance: float, similarity: float) -> tuple[float, float, bool]:
    """Penalize or reject results that resemble items rated irrelevant.

    Returns (relevance, importance, force_reject).
    """
    if similarity >= IRRELEVANT_SIMILARITY_REJECT_MIN:
        return 0.0, 0.0, True
    if similarity >= IRRELEVANT_SIMILARITY_PENALTY_MIN:
        return (
            clamp_score(relevance - IRRELEVANT_RELEVANCE_PENALTY),
            clamp_score(importance - IRRELEVANT_IMPORTANCE_PENALTY),
            False,
        )
    return relevance, importance, False


async def max_irrelevant_similarity(store, embedding: list[float], now: datetime | None = None) -> float:
    if not embedding:
        return 0.0
    since = (now or utcnow()) - timedelta(days=IRRELEVANT_SIMILARITY_LOOKBACK_DAYS)
    try:
        matches = await store.find_similar_irrelevant_items(embedding, since, 1)
    except Exception:
        logger.warning("Irrelevant-similarity probe failed", exc_info=True)
        return 0.0
    if not matches:
        return 0.0
    similarity = matches[0][1]
    if similarity >= IRRELEVANT_SIMILARITY_PENALTY_MIN:
        action = "reject" if similarity >= IRRELEVANT_SIMILARITY_REJECT_MIN else "penalty"
        metrics.irrelevant_similarity_total.labels(action=action).inc()
    return similarity


def normalize_results(
    results: list[BatchResult | None],
    candidates: list[Candidate],
    stats: dict[str, ChannelStats],
) -> None:
    """Replace scores with per-channel z-scores, clamped back into [0, 1]."""
    for result, cand in zip(results, candidates):
        if result is None:
            continue
        channel = stats.get(cand.raw.channel_id)
        if channel is None:
            continue
        if channel.stddev_relevance > NORMALIZATION_STDDEV_MIN:
            result.relevance_score = clamp_score(
                (result.relevance_score - channel.avg_relevance) / channel.stddev_relevance
            )
        if channel.stddev_importance > NORMALIZATION_STDDEV_MIN:
            result.importance_score = clamp_score(
                (result.importance_score - channel.avg_importance) / channel.stddev_importance
            )


def effective_threshold(base_threshold: float, raw: RawMessage) -> float:
    threshold = base_threshold
    if raw.relevance_threshold > 0:
        threshold = raw.relevance_threshold
    if raw.auto_relevance_enabled:
        threshold += raw.relevance_threshold_delta
    return clamp_score(threshold)


def determine_status(relevance: float, base_threshold: float, raw: RawMessage) -> str:
    if relevance < effective_threshold(base_threshold, raw):
        return STATUS_REJECTED
    return STATUS_READY
