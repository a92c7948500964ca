"""Message store interface used by the pipeline, and its SQLite implementation."""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from chatdigest import db
from chatdigest.models import (
    Bullet,
    ChannelStats,
    FilterRule,
    GateDecision,
    Item,
    RatingSummary,
    RawMessage,
    SummaryCacheEntry,
)


class BaseStore(ABC):
    """Everything the pipeline reads from or writes to durable storage."""

    # --- Claims ---

    @abstractmethod
    async def claim_unprocessed(self, limit: int, now: datetime | None = None) -> list[RawMessage]:
        """Claim up to ``limit`` raw messages for this worker."""
        ...

    @abstractmethod
    async def count_backlog(self) -> int: ...

    @abstractmethod
    async def get_recent_channel_messages(
        self, channel_id: str, before: datetime, limit: int
    ) -> list[str]: ...

    @abstractmethod
    async def mark_processed(self, raw_id: str) -> None: ...

    @abstractmethod
    async def release_claim(self, raw_id: str) -> None: ...

    @abstractmethod
    async def recover_stuck(self, threshold: timedelta, now: datetime | None = None) -> int:
        """Clear stale claims; returns how many rows were released."""
        ...

    # --- Dedup probes ---

    @abstractmethod
    async def check_strict_duplicate(self, canonical_hash: str, exclude_raw_id: str) -> str | None: ...

    @abstractmethod
    async def find_similar_item(
        self, embedding: list[float], threshold: float, min_created_at: datetime
    ) -> str | None: ...

    @abstractmethod
    async def find_similar_item_for_channel(
        self, embedding: list[float], channel_id: str, threshold: float, min_created_at: datetime
    ) -> str | None: ...

    @abstractmethod
    async def find_similar_irrelevant_items(
        self, embedding: list[float], since: datetime, limit: int
    ) -> list[tuple[str, float]]: ...

    # --- Items ---

    @abstractmethod
    async def save_item(self, item: Item) -> str: ...

    @abstractmethod
    async def save_item_error(self, raw_id: str, error: str) -> None: ...

    @abstractmethod
    async def save_embedding(self, item_id: str, embedding: list[float]) -> None: ...

    @abstractmethod
    async def get_item_by_canonical_url(self, canonical_url: str, exclude_raw_id: str) -> Item | None: ...

    # --- Audit logs ---

    @abstractmethod
    async def save_relevance_gate_log(self, raw_id: str, decision: GateDecision) -> None: ...

    @abstractmethod
    async def save_drop_log(self, raw_id: str, reason: str, detail: str = "") -> None: ...

    # --- Bullets ---

    @abstractmethod
    async def insert_bullet(self, bullet: Bullet) -> str: ...

    @abstractmethod
    async def update_bullet_embedding(self, bullet_id: str, embedding: list[float]) -> None: ...

    @abstractmethod
    async def get_bullets_for_dedup(self, lookback_hours: int, now: datetime | None = None) -> list[Bullet]:
        """Pending bullets plus recent ready ones, ready first then by importance."""
        ...

    @abstractmethod
    async def mark_bullet_duplicate(self, bullet_id: str, canonical_id: str) -> None: ...

    @abstractmethod
    async def mark_bullet_canonical(self, bullet_id: str) -> None: ...

    # --- Summary cache and statistics ---

    @abstractmethod
    async def get_summary_cache(self, key: str, digest_language: str) -> SummaryCacheEntry | None: ...

    @abstractmethod
    async def upsert_summary_cache(self, entry: SummaryCacheEntry) -> None: ...

    @abstractmethod
    async def get_channel_stats(self) -> dict[str, ChannelStats]: ...

    @abstractmethod
    async def get_weighted_rating_summary(
        self, channel_id: str, since: datetime, half_life_days: float, now: datetime | None = None
    ) -> RatingSummary: ...

    # --- Follow-up queues ---

    @abstractmethod
    async def enqueue_factcheck(self, item_id: str, claim: str, normalized_claim: str) -> bool: ...

    @abstractmethod
    async def count_pending_factchecks(self) -> int: ...

    @abstractmethod
    async def enqueue_enrichment(self, item_id: str, summary: str) -> bool: ...

    @abstractmethod
    async def count_pending_enrichments(self) -> int: ...

    # --- Settings and filters ---

    @abstractmethod
    async def get_setting(self, key: str) -> str | None:
        """Raw JSON value for ``key``, or None if unset."""
        ...

    @abstractmethod
    async def delete_setting(self, key: str) -> None: ...

    @abstractmethod
    async def save_setting(self, key: str, value_json: str, changed_by: str = "") -> None: ...

    @abstractmethod
    async def get_active_filters(self) -> list[FilterRule]: ...


class SQLiteStore(BaseStore):
    """BaseStore backed by a single SQLite connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @classmethod
    def open(cls, db_path: str) -> SQLiteStore:
        db.init_db(db_path)
        return cls(db.get_connection(db_path))

    def close(self) -> None:
        self.conn.close()

    async def claim_unprocessed(self, limit, now=None):
        return db.claim_unprocessed_messages(self.conn, limit, now)

    async def count_backlog(self):
        return db.count_backlog(self.conn)

    async def get_recent_channel_messages(self, channel_id, before, limit):
        return db.get_recent_channel_messages(self.conn, channel_id, before, limit)

    async def mark_processed(self, raw_id):
        db.mark_processed(self.conn, raw_id)

    async def release_claim(self, raw_id):
        db.release_claim(self.conn, raw_id)

    async def recover_stuck(self, threshold, now=None):
        return db.recover_stuck_messages(self.conn, threshold, now)

    async def check_strict_duplicate(self, canonical_hash, exclude_raw_id):
        return db.find_strict_duplicate(self.conn, canonical_hash, exclude_raw_id)

    async def find_similar_item(self, embedding, threshold, min_created_at):
        return db.find_similar_item(self.conn, embedding, threshold, min_created_at)

    async def find_similar_item_for_channel(self, embedding, channel_id, threshold, min_created_at):
        return db.find_similar_item(
            self.conn, embedding, threshold, min_created_at, channel_id=channel_id,
        )

    async def find_similar_irrelevant_items(self, embedding, since, limit):
        return db.find_similar_irrelevant_items(self.conn, embedding, since, limit)

    async def save_item(self, item):
        return db.save_item(self.conn, item)

    async def save_item_error(self, raw_id, error):
        db.save_item_error(self.conn, raw_id, error)

    async def save_embedding(self, item_id, embedding):
        db.save_embedding(self.conn, item_id, embedding)

    async def get_item_by_canonical_url(self, canonical_url, exclude_raw_id):
        return db.get_item_by_canonical_url(self.conn, canonical_url, exclude_raw_id)

    async def save_relevance_gate_log(self, raw_id, decision):
        db.insert_relevance_gate_log(
            self.conn, raw_id, decision.decision, decision.confidence,
            decision.reason, decision.model, decision.version,
        )

    async def save_drop_log(self, raw_id, reason, detail=""):
        db.insert_drop_log(self.conn, raw_id, reason, detail)

    async def insert_bullet(self, bullet):
        return db.insert_bullet(self.conn, bullet)

    async def update_bullet_embedding(self, bullet_id, embedding):
        db.update_bullet_embedding(self.conn, bullet_id, embedding)

    async def get_bullets_for_dedup(self, lookback_hours, now=None):
        return db.get_bullets_for_dedup(self.conn, lookback_hours, now)

    async def mark_bullet_duplicate(self, bullet_id, canonical_id):
        db.mark_bullet_duplicate(self.conn, bullet_id, canonical_id)

    async def mark_bullet_canonical(self, bullet_id):
        db.mark_bullet_canonical(self.conn, bullet_id)

    async def get_summary_cache(self, key, digest_language):
        return db.get_summary_cache(self.conn, key, digest_language)

    async def upsert_summary_cache(self, entry):
        db.upsert_summary_cache(self.conn, entry)

    async def get_channel_stats(self):
        return db.get_channel_stats(self.conn)

    async def get_weighted_rating_summary(self, channel_id, since, half_life_days, now=None):
        return db.get_weighted_rating_summary(self.conn, channel_id, since, half_life_days, now)

    async def enqueue_factcheck(self, item_id, claim, normalized_claim):
        return db.enqueue_factcheck(self.conn, item_id, claim, normalized_claim)

    async def count_pending_factchecks(self):
        return db.count_pending_factchecks(self.conn)

    async def enqueue_enrichment(self, item_id, summary):
        return db.enqueue_enrichment(self.conn, item_id, summary)

    async def count_pending_enrichments(self):
        return db.count_pending_enrichments(self.conn)

    async def get_setting(self, key):
        return db.get_setting(self.conn, key)

    async def delete_setting(self, key):
        db.delete_setting(self.conn, key)

    async def save_setting(self, key, value_json, changed_by=""):
        db.save_setting_with_history(self.conn, key, value_json, changed_by)

    async def get_active_filters(self):
        return db.get_active_filters(self.conn)
