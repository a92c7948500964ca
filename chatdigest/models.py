"""Core data models for the digest pipeline."""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

STATUS_READY = "ready"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"

BULLET_PENDING = "pending"
BULLET_READY = "ready"
BULLET_DUPLICATE = "duplicate"

_WS_RE = re.compile(r"\s+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return _WS_RE.sub(" ", text.strip().lower())


def compute_canonical_hash(text: str) -> str:
    """Fingerprint of the normalized message text."""
    return hashlib.sha256(normalize_text(text).encode()).hexdigest()


@dataclass
class Channel:
    """A source chat channel and its scoring overrides."""

    id: str
    title: str = ""
    username: str = ""
    importance_weight: float = 1.0
    relevance_threshold: float = 0.0
    relevance_threshold_delta: float = 0.0
    auto_relevance_enabled: bool = False


@dataclass
class RawMessage:
    """A message as written by the ingester, joined with its channel overrides."""

    channel_id: str
    tg_message_id: int
    tg_date: datetime
    text: str = ""
    entities_json: str = ""
    media_json: str = ""
    media_blob: bytes | None = None
    canonical_hash: str = ""
    is_forward: bool = False
    inserted_at: datetime = field(default_factory=utcnow)
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    id: str = field(default_factory=new_id)
    # Joined from channels
    channel_title: str = ""
    channel_username: str = ""
    importance_weight: float = 1.0
    relevance_threshold: float = 0.0
    relevance_threshold_delta: float = 0.0
    auto_relevance_enabled: bool = False

    def __post_init__(self):
        if not self.canonical_hash and self.text:
            self.canonical_hash = compute_canonical_hash(self.text)


@dataclass
class ResolvedLink:
    """Content fetched for a URL found in a message."""

    url: str
    domain: str = ""
    title: str = ""
    content: str = ""
    language: str = ""
    word_count: int = 0
    canonical_url: str = ""
    link_type: str = "web"  # web, telegram
    id: str = field(default_factory=new_id)


@dataclass
class Candidate:
    """A claimed message that survived filtering, with its enrichment."""

    raw: RawMessage
    text: str
    preview_text: str = ""
    channel_context: list[str] = field(default_factory=list)
    links: list[ResolvedLink] = field(default_factory=list)
    embedding: list[float] = field(default_factory=list)
    model: str = ""
    links_in_prompt: bool = True


@dataclass
class BatchResult:
    """One oracle answer for one candidate."""

    index: int
    relevance_score: float = 0.0
    importance_score: float = 0.0
    topic: str = ""
    summary: str = ""
    language: str = ""
    source_channel: str = ""


@dataclass
class Item:
    """The scored, summarized outcome of one raw message."""

    raw_message_id: str
    relevance_score: float = 0.0
    importance_score: float = 0.0
    topic: str = ""
    summary: str = ""
    language: str = ""
    language_source: str = ""  # original, preview, summary
    status: str = STATUS_READY
    bullet_total_count: int = 0
    bullet_included_count: int = 0
    canonical_url: str = ""
    first_seen_at: datetime = field(default_factory=utcnow)
    digested_at: datetime | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    error_json: str = ""
    id: str = field(default_factory=new_id)


@dataclass
class ExtractedBullet:
    """A bullet proposed by the oracle, before persistence."""

    text: str
    topic: str = ""
    relevance_score: float = 0.0
    importance_score: float = 0.0


@dataclass
class Bullet:
    """A persisted short-form fact belonging to an item."""

    item_id: str
    bullet_index: int
    text: str
    topic: str = ""
    relevance_score: float = 0.0
    importance_score: float = 0.0
    bullet_hash: str = ""
    status: str = BULLET_PENDING
    embedding: list[float] = field(default_factory=list)
    bullet_cluster_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class SummaryCacheEntry:
    """Cached oracle output keyed by extended canonical hash and language."""

    canonical_hash: str
    digest_language: str
    summary: str
    topic: str = ""
    language: str = ""
    relevance_score: float = 0.0
    importance_score: float = 0.0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class GateDecision:
    """Relevance gate verdict for one message."""

    decision: str  # relevant, irrelevant
    confidence: float
    reason: str
    model: str = "heuristic"
    version: str = "v1"

    @property
    def relevant(self) -> bool:
        return self.decision == "relevant"


@dataclass
class ChannelStats:
    """Rolling per-channel score statistics."""

    channel_id: str
    avg_relevance: float = 0.0
    stddev_relevance: float = 0.0
    avg_importance: float = 0.0
    stddev_importance: float = 0.0


@dataclass
class RatingSummary:
    """Decay-weighted rating counts for one channel."""

    weighted_good: float = 0.0
    weighted_bad: float = 0.0
    weighted_irrelevant: float = 0.0
    weighted_total: float = 0.0
    total_count: int = 0


@dataclass
class FilterRule:
    """An allow or deny pattern managed by operators."""

    type: str  # allow, deny
    pattern: str
    is_active: bool = True
