"""SQLite database schema and query helpers."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

from chatdigest.models import (
    Bullet,
    Channel,
    ChannelStats,
    FilterRule,
    Item,
    RatingSummary,
    RawMessage,
    SummaryCacheEntry,
    new_id,
    utcnow,
)

SCHEMA_VERSION = 1

MAX_ITEM_RETRIES = 5

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    username TEXT NOT NULL DEFAULT '',
    importance_weight REAL NOT NULL DEFAULT 1.0,
    relevance_threshold REAL NOT NULL DEFAULT 0.0,
    relevance_threshold_delta REAL NOT NULL DEFAULT 0.0,
    auto_relevance_enabled INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS raw_messages (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    tg_message_id INTEGER NOT NULL,
    tg_date TEXT NOT NULL,
    text TEXT NOT NULL DEFAULT '',
    entities_json TEXT NOT NULL DEFAULT '',
    media_json TEXT NOT NULL DEFAULT '',
    media_blob BLOB,
    canonical_hash TEXT NOT NULL DEFAULT '',
    is_forward INTEGER NOT NULL DEFAULT 0,
    inserted_at TEXT NOT NULL,
    processing_started_at TEXT,
    processed_at TEXT,
    UNIQUE (channel_id, tg_message_id)
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    raw_message_id TEXT UNIQUE NOT NULL,
    relevance_score REAL NOT NULL DEFAULT 0.0,
    importance_score REAL NOT NULL DEFAULT 0.0,
    topic TEXT NOT NULL DEFAULT '',
    summary TEXT NOT NULL DEFAULT '',
    language TEXT NOT NULL DEFAULT '',
    language_source TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    bullet_total_count INTEGER NOT NULL DEFAULT 0,
    bullet_included_count INTEGER NOT NULL DEFAULT 0,
    canonical_url TEXT NOT NULL DEFAULT '',
    first_seen_at TEXT NOT NULL,
    digested_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    error_json TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS embeddings (
    item_id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bullets (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL,
    bullet_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    topic TEXT NOT NULL DEFAULT '',
    relevance_score REAL NOT NULL DEFAULT 0.0,
    importance_score REAL NOT NULL DEFAULT 0.0,
    bullet_hash TEXT NOT NULL DEFAULT '',
    bullet_cluster_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    embedding BLOB,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summary_cache (
    canonical_hash TEXT NOT NULL,
    digest_language TEXT NOT NULL,
    summary TEXT NOT NULL,
    topic TEXT NOT NULL DEFAULT '',
    language TEXT NOT NULL DEFAULT '',
    relevance_score REAL NOT NULL DEFAULT 0.0,
    importance_score REAL NOT NULL DEFAULT 0.0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (canonical_hash, digest_language)
);

CREATE TABLE IF NOT EXISTS relevance_gate_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    raw_message_id TEXT NOT NULL,
    decision TEXT NOT NULL,
    confidence REAL NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    gate_version TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS raw_message_drop_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    raw_message_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS factcheck_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT UNIQUE NOT NULL,
    claim TEXT NOT NULL,
    normalized_claim TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS enrichment_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT UNIQUE NOT NULL,
    summary TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_stats (
    channel_id TEXT PRIMARY KEY,
    avg_relevance REAL NOT NULL DEFAULT 0.0,
    stddev_relevance REAL NOT NULL DEFAULT 0.0,
    avg_importance REAL NOT NULL DEFAULT 0.0,
    stddev_importance REAL NOT NULL DEFAULT 0.0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS item_ratings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL,
    rating TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT NOT NULL,
    changed_by TEXT NOT NULL DEFAULT '',
    changed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS filters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    pattern TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_raw_messages_claim ON raw_messages(processed_at, processing_started_at, tg_date);
CREATE INDEX IF NOT EXISTS idx_raw_messages_hash ON raw_messages(canonical_hash);
CREATE INDEX IF NOT EXISTS idx_raw_messages_channel_date ON raw_messages(channel_id, tg_date);
CREATE INDEX IF NOT EXISTS idx_items_created_at ON items(created_at);
CREATE INDEX IF NOT EXISTS idx_items_canonical_url ON items(canonical_url);
CREATE INDEX IF NOT EXISTS idx_bullets_status ON bullets(status, created_at);
CREATE INDEX IF NOT EXISTS idx_item_ratings_item ON item_ratings(item_id);
"""

_RAW_SELECT = """
SELECT rm.*,
       COALESCE(c.title, '') AS channel_title,
       COALESCE(c.username, '') AS channel_username,
       COALESCE(c.importance_weight, 1.0) AS importance_weight,
       COALESCE(c.relevance_threshold, 0.0) AS relevance_threshold,
       COALESCE(c.relevance_threshold_delta, 0.0) AS relevance_threshold_delta,
       COALESCE(c.auto_relevance_enabled, 0) AS auto_relevance_enabled
FROM raw_messages rm
LEFT JOIN channels c ON c.id = rm.channel_id
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=30000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()


def _dt_str(dt: datetime | None) -> str | None:
    # Fixed-width UTC so stored timestamps compare correctly as strings
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _vec_to_blob(vec: list[float]) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _blob_to_vec(blob: bytes | None) -> list[float]:
    if not blob:
        return []
    return np.frombuffer(blob, dtype=np.float32).tolist()


def _row_to_raw(row: sqlite3.Row) -> RawMessage:
    return RawMessage(
        id=row["id"],
        channel_id=row["channel_id"],
        tg_message_id=row["tg_message_id"],
        tg_date=_parse_dt(row["tg_date"]),
        text=row["text"],
        entities_json=row["entities_json"],
        media_json=row["media_json"],
        media_blob=row["media_blob"],
        canonical_hash=row["canonical_hash"],
        is_forward=bool(row["is_forward"]),
        inserted_at=_parse_dt(row["inserted_at"]),
        processing_started_at=_parse_dt(row["processing_started_at"]),
        processed_at=_parse_dt(row["processed_at"]),
        channel_title=row["channel_title"],
        channel_username=row["channel_username"],
        importance_weight=row["importance_weight"],
        relevance_threshold=row["relevance_threshold"],
        relevance_threshold_delta=row["relevance_threshold_delta"],
        auto_relevance_enabled=bool(row["auto_relevance_enabled"]),
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        raw_message_id=row["raw_message_id"],
        relevance_score=row["relevance_score"],
        importance_score=row["importance_score"],
        topic=row["topic"],
        summary=row["summary"],
        language=row["language"],
        language_source=row["language_source"],
        status=row["status"],
        bullet_total_count=row["bullet_total_count"],
        bullet_included_count=row["bullet_included_count"],
        canonical_url=row["canonical_url"],
        first_seen_at=_parse_dt(row["first_seen_at"]),
        digested_at=_parse_dt(row["digested_at"]),
        retry_count=row["retry_count"],
        next_retry_at=_parse_dt(row["next_retry_at"]),
        error_json=row["error_json"],
    )


def _row_to_bullet(row: sqlite3.Row) -> Bullet:
    return Bullet(
        id=row["id"],
        item_id=row["item_id"],
        bullet_index=row["bullet_index"],
        text=row["text"],
        topic=row["topic"],
        relevance_score=row["relevance_score"],
        importance_score=row["importance_score"],
        bullet_hash=row["bullet_hash"],
        bullet_cluster_id=row["bullet_cluster_id"],
        status=row["status"],
        embedding=_blob_to_vec(row["embedding"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _best_match(
    rows: list[sqlite3.Row], embedding: list[float], id_key: str
) -> list[tuple[str, float]]:
    """Cosine similarity of embedding against each row's stored vector, best first."""
    query = np.asarray(embedding, dtype=np.float32)
    q_norm = np.linalg.norm(query)
    if not rows or q_norm == 0:
        return []
    scored = []
    for row in rows:
        vec = np.frombuffer(row["embedding"], dtype=np.float32)
        if vec.shape != query.shape:
            continue
        v_norm = np.linalg.norm(vec)
        if v_norm == 0:
            continue
        scored.append((row[id_key], float(np.dot(query, vec) / (q_norm * v_norm))))
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


# --- Channel and raw message helpers ---


def insert_channel(conn: sqlite3.Connection, channel: Channel) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO channels
           (id, title, username, importance_weight, relevance_threshold,
            relevance_threshold_delta, auto_relevance_enabled)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            channel.id,
            channel.title,
            channel.username,
            channel.importance_weight,
            channel.relevance_threshold,
            channel.relevance_threshold_delta,
            int(channel.auto_relevance_enabled),
        ),
    )
    conn.commit()


def insert_raw_message(conn: sqlite3.Connection, msg: RawMessage) -> str:
    """Insert a raw message, returning its ID. Skips duplicates by (channel, message id)."""
    conn.execute(
        """INSERT OR IGNORE INTO raw_messages
           (id, channel_id, tg_message_id, tg_date, text, entities_json,
            media_json, media_blob, canonical_hash, is_forward, inserted_at,
            processing_started_at, processed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            msg.id,
            msg.channel_id,
            msg.tg_message_id,
            _dt_str(msg.tg_date),
            msg.text,
            msg.entities_json,
            msg.media_json,
            msg.media_blob,
            msg.canonical_hash,
            int(msg.is_forward),
            _dt_str(msg.inserted_at),
            _dt_str(msg.processing_started_at),
            _dt_str(msg.processed_at),
        ),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM raw_messages WHERE channel_id = ? AND tg_message_id = ?",
        (msg.channel_id, msg.tg_message_id),
    ).fetchone()
    return row["id"]


def get_raw_message(conn: sqlite3.Connection, raw_id: str) -> RawMessage | None:
    row = conn.execute(_RAW_SELECT + " WHERE rm.id = ?", (raw_id,)).fetchone()
    return _row_to_raw(row) if row else None


def claim_unprocessed_messages(
    conn: sqlite3.Connection, limit: int, now: datetime | None = None
) -> list[RawMessage]:
    """Atomically claim up to ``limit`` messages by stamping processing_started_at.

    Picks never-claimed messages plus messages whose item failed and is due for
    a retry. BEGIN IMMEDIATE takes the write lock before selecting, so two
    workers sharing the database never claim the same row.
    """
    now = now or utcnow()
    now_s = _dt_str(now)
    conn.execute("BEGIN IMMEDIATE")
    try:
        rows = conn.execute(
            _RAW_SELECT
            + """
            LEFT JOIN items i ON i.raw_message_id = rm.id
            WHERE (rm.processed_at IS NULL AND rm.processing_started_at IS NULL)
               OR (i.status = 'error'
                   AND i.retry_count < ?
                   AND i.next_retry_at IS NOT NULL
                   AND i.next_retry_at <= ?
                   AND (rm.processing_started_at IS NULL
                        OR rm.processing_started_at <= rm.processed_at))
            ORDER BY rm.tg_date
            LIMIT ?""",
            (MAX_ITEM_RETRIES, now_s, limit),
        ).fetchall()
        ids = [row["id"] for row in rows]
        if ids:
            placeholders = ",".join("?" * len(ids))
            conn.execute(
                f"UPDATE raw_messages SET processing_started_at = ? WHERE id IN ({placeholders})",
                (now_s, *ids),
            )
        conn.commit()
    except BaseException:
        conn.rollback()
        raise

    messages = [_row_to_raw(row) for row in rows]
    for msg in messages:
        msg.processing_started_at = now
    return messages


def count_backlog(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM raw_messages WHERE processed_at IS NULL"
    ).fetchone()
    return row["n"]


def get_recent_channel_messages(
    conn: sqlite3.Connection, channel_id: str, before: datetime, limit: int
) -> list[str]:
    """Texts of the channel's messages posted before ``before``, newest first."""
    rows = conn.execute(
        """SELECT text FROM raw_messages
           WHERE channel_id = ? AND tg_date < ? AND text != ''
           ORDER BY tg_date DESC LIMIT ?""",
        (channel_id, _dt_str(before), limit),
    ).fetchall()
    return [row["text"] for row in rows]


def mark_processed(conn: sqlite3.Connection, raw_id: str, now: datetime | None = None) -> None:
    conn.execute(
        "UPDATE raw_messages SET processed_at = ? WHERE id = ?",
        (_dt_str(now or utcnow()), raw_id),
    )
    conn.commit()


def release_claim(conn: sqlite3.Connection, raw_id: str) -> None:
    conn.execute(
        "UPDATE raw_messages SET processing_started_at = NULL WHERE id = ? AND processed_at IS NULL",
        (raw_id,),
    )
    conn.commit()


def recover_stuck_messages(
    conn: sqlite3.Connection, threshold: timedelta, now: datetime | None = None
) -> int:
    """Clear claims older than ``threshold`` on unprocessed rows. Returns the count."""
    cutoff = (now or utcnow()) - threshold
    cur = conn.execute(
        """UPDATE raw_messages SET processing_started_at = NULL
           WHERE processed_at IS NULL
             AND processing_started_at IS NOT NULL
             AND processing_started_at < ?""",
        (_dt_str(cutoff),),
    )
    conn.commit()
    return cur.rowcount


# --- Dedup probes ---


def find_strict_duplicate(
    conn: sqlite3.Connection, canonical_hash: str, exclude_raw_id: str
) -> str | None:
    """ID of an existing item whose raw message has the same canonical hash."""
    if not canonical_hash:
        return None
    row = conn.execute(
        """SELECT i.id FROM raw_messages rm
           JOIN items i ON i.raw_message_id = rm.id
           WHERE rm.canonical_hash = ? AND rm.id != ?
           ORDER BY i.created_at LIMIT 1""",
        (canonical_hash, exclude_raw_id),
    ).fetchone()
    return row["id"] if row else None


def find_similar_item(
    conn: sqlite3.Connection,
    embedding: list[float],
    threshold: float,
    min_created_at: datetime,
    channel_id: str | None = None,
) -> str | None:
    """Most similar stored item above ``threshold``, optionally limited to one channel.

    The global probe windows on item creation time, the per-channel probe on
    the message's own tg_date.
    """
    if channel_id is None:
        rows = conn.execute(
            """SELECT i.id, e.embedding FROM items i
               JOIN embeddings e ON e.item_id = i.id
               WHERE i.created_at >= ?""",
            (_dt_str(min_created_at),),
        ).fetchall()
    else:
        rows = conn.execute(
            """SELECT i.id, e.embedding FROM items i
               JOIN embeddings e ON e.item_id = i.id
               JOIN raw_messages rm ON rm.id = i.raw_message_id
               WHERE rm.channel_id = ? AND rm.tg_date >= ?""",
            (channel_id, _dt_str(min_created_at)),
        ).fetchall()
    matches = _best_match(rows, embedding, "id")
    if matches and matches[0][1] > threshold:
        return matches[0][0]
    return None


def find_similar_irrelevant_items(
    conn: sqlite3.Connection, embedding: list[float], since: datetime, limit: int = 5
) -> list[tuple[str, float]]:
    """Items rated irrelevant since ``since``, ranked by similarity."""
    rows = conn.execute(
        """SELECT DISTINCT i.id, e.embedding FROM item_ratings r
           JOIN items i ON i.id = r.item_id
           JOIN embeddings e ON e.item_id = i.id
           WHERE r.rating = 'irrelevant' AND r.created_at >= ?""",
        (_dt_str(since),),
    ).fetchall()
    return _best_match(rows, embedding, "id")[:limit]


# --- Item helpers ---


def save_item(conn: sqlite3.Connection, item: Item) -> str:
    """Insert or replace the item for a raw message, returning the stored item ID."""
    now_s = _dt_str(utcnow())
    conn.execute(
        """INSERT INTO items
           (id, raw_message_id, relevance_score, importance_score, topic, summary,
            language, language_source, status, bullet_total_count,
            bullet_included_count, canonical_url, first_seen_at, retry_count,
            next_retry_at, error_json, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, '', ?)
           ON CONFLICT(raw_message_id) DO UPDATE SET
               relevance_score = excluded.relevance_score,
               importance_score = excluded.importance_score,
               topic = excluded.topic,
               summary = excluded.summary,
               language = excluded.language,
               language_source = excluded.language_source,
               status = excluded.status,
               bullet_total_count = excluded.bullet_total_count,
               bullet_included_count = excluded.bullet_included_count,
               canonical_url = excluded.canonical_url,
               next_retry_at = NULL,
               error_json = ''""",
        (
            item.id,
            item.raw_message_id,
            item.relevance_score,
            item.importance_score,
            item.topic,
            item.summary,
            item.language,
            item.language_source,
            item.status,
            item.bullet_total_count,
            item.bullet_included_count,
            item.canonical_url,
            _dt_str(item.first_seen_at),
            now_s,
        ),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM items WHERE raw_message_id = ?", (item.raw_message_id,)
    ).fetchone()
    item.id = row["id"]
    return item.id


def save_item_error(
    conn: sqlite3.Connection, raw_id: str, error: str, now: datetime | None = None
) -> None:
    """Record a failed item; retries back off as 2^retry_count minutes."""
    now = now or utcnow()
    row = conn.execute(
        "SELECT retry_count FROM items WHERE raw_message_id = ?", (raw_id,)
    ).fetchone()
    retry_count = (row["retry_count"] if row else 0) + 1
    next_retry = now + timedelta(minutes=2**retry_count)
    error_json = json.dumps({"error": error}, ensure_ascii=False)
    conn.execute(
        """INSERT INTO items
           (id, raw_message_id, status, first_seen_at, retry_count,
            next_retry_at, error_json, created_at)
           VALUES (?, ?, 'error', ?, ?, ?, ?, ?)
           ON CONFLICT(raw_message_id) DO UPDATE SET
               status = 'error',
               retry_count = excluded.retry_count,
               next_retry_at = excluded.next_retry_at,
               error_json = excluded.error_json""",
        (
            new_id(),
            raw_id,
            _dt_str(now),
            retry_count,
            _dt_str(next_retry),
            error_json,
            _dt_str(now),
        ),
    )
    conn.commit()


def get_item_by_raw_id(conn: sqlite3.Connection, raw_id: str) -> Item | None:
    row = conn.execute(
        "SELECT * FROM items WHERE raw_message_id = ?", (raw_id,)
    ).fetchone()
    return _row_to_item(row) if row else None


def get_item_by_canonical_url(
    conn: sqlite3.Connection, canonical_url: str, exclude_raw_id: str = ""
) -> Item | None:
    """Most recent ready item with a summary for the same canonical URL."""
    row = conn.execute(
        """SELECT * FROM items
           WHERE canonical_url = ? AND raw_message_id != ?
             AND status = 'ready' AND summary != ''
           ORDER BY created_at DESC LIMIT 1""",
        (canonical_url, exclude_raw_id),
    ).fetchone()
    return _row_to_item(row) if row else None


def save_embedding(conn: sqlite3.Connection, item_id: str, embedding: list[float]) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO embeddings (item_id, embedding, created_at)
           VALUES (?, ?, ?)""",
        (item_id, _vec_to_blob(embedding), _dt_str(utcnow())),
    )
    conn.commit()


def get_embedding(conn: sqlite3.Connection, item_id: str) -> list[float]:
    row = conn.execute(
        "SELECT embedding FROM embeddings WHERE item_id = ?", (item_id,)
    ).fetchone()
    return _blob_to_vec(row["embedding"]) if row else []


def insert_item_rating(
    conn: sqlite3.Connection, item_id: str, rating: str, created_at: datetime | None = None
) -> None:
    conn.execute(
        "INSERT INTO item_ratings (item_id, rating, created_at) VALUES (?, ?, ?)",
        (item_id, rating, _dt_str(created_at or utcnow())),
    )
    conn.commit()


def get_channel_ratings(
    conn: sqlite3.Connection, channel_id: str, since: datetime
) -> list[tuple[str, datetime]]:
    """(rating, created_at) pairs for the channel's items since ``since``."""
    rows = conn.execute(
        """SELECT r.rating, r.created_at FROM item_ratings r
           JOIN items i ON i.id = r.item_id
           JOIN raw_messages rm ON rm.id = i.raw_message_id
           WHERE rm.channel_id = ? AND r.created_at >= ?""",
        (channel_id, _dt_str(since)),
    ).fetchall()
    return [(row["rating"], _parse_dt(row["created_at"])) for row in rows]


def get_item_status_counts(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM items GROUP BY status"
    ).fetchall()
    return {row["status"]: row["n"] for row in rows}


# --- Audit logs ---


def insert_relevance_gate_log(
    conn: sqlite3.Connection,
    raw_id: str,
    decision: str,
    confidence: float,
    reason: str,
    model: str,
    version: str,
) -> None:
    conn.execute(
        """INSERT INTO relevance_gate_log
           (raw_message_id, decision, confidence, reason, model, gate_version, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (raw_id, decision, confidence, reason, model, version, _dt_str(utcnow())),
    )
    conn.commit()


def insert_drop_log(conn: sqlite3.Connection, raw_id: str, reason: str, detail: str = "") -> None:
    conn.execute(
        """INSERT INTO raw_message_drop_log (raw_message_id, reason, detail, created_at)
           VALUES (?, ?, ?, ?)""",
        (raw_id, reason, detail, _dt_str(utcnow())),
    )
    conn.commit()


def get_drop_reason_counts(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute(
        "SELECT reason, COUNT(*) AS n FROM raw_message_drop_log GROUP BY reason"
    ).fetchall()
    return {row["reason"]: row["n"] for row in rows}


# --- Bullets ---


def insert_bullet(conn: sqlite3.Connection, bullet: Bullet) -> str:
    conn.execute(
        """INSERT INTO bullets
           (id, item_id, bullet_index, text, topic, relevance_score,
            importance_score, bullet_hash, bullet_cluster_id, status,
            embedding, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            bullet.id,
            bullet.item_id,
            bullet.bullet_index,
            bullet.text,
            bullet.topic,
            bullet.relevance_score,
            bullet.importance_score,
            bullet.bullet_hash,
            bullet.bullet_cluster_id,
            bullet.status,
            _vec_to_blob(bullet.embedding) if bullet.embedding else None,
            _dt_str(bullet.created_at),
        ),
    )
    conn.commit()
    return bullet.id


def update_bullet_embedding(conn: sqlite3.Connection, bullet_id: str, embedding: list[float]) -> None:
    conn.execute(
        "UPDATE bullets SET embedding = ? WHERE id = ?",
        (_vec_to_blob(embedding), bullet_id),
    )
    conn.commit()


def get_bullets_for_dedup(
    conn: sqlite3.Connection, lookback_hours: int, now: datetime | None = None
) -> list[Bullet]:
    """Pending bullets plus recent ready ones, ready first, then by importance."""
    since = (now or utcnow()) - timedelta(hours=lookback_hours)
    rows = conn.execute(
        """SELECT * FROM bullets
           WHERE status = 'pending' OR (status = 'ready' AND created_at >= ?)
           ORDER BY CASE status WHEN 'ready' THEN 0 ELSE 1 END,
                    importance_score DESC""",
        (_dt_str(since),),
    ).fetchall()
    return [_row_to_bullet(row) for row in rows]


def get_bullets_by_item(conn: sqlite3.Connection, item_id: str) -> list[Bullet]:
    rows = conn.execute(
        "SELECT * FROM bullets WHERE item_id = ? ORDER BY bullet_index", (item_id,)
    ).fetchall()
    return [_row_to_bullet(row) for row in rows]


def mark_bullet_duplicate(conn: sqlite3.Connection, bullet_id: str, canonical_id: str) -> None:
    conn.execute(
        "UPDATE bullets SET status = 'duplicate', bullet_cluster_id = ? WHERE id = ?",
        (canonical_id, bullet_id),
    )
    conn.commit()


def mark_bullet_canonical(conn: sqlite3.Connection, bullet_id: str) -> None:
    conn.execute(
        "UPDATE bullets SET status = 'ready', bullet_cluster_id = id WHERE id = ? AND status = 'pending'",
        (bullet_id,),
    )
    conn.commit()


# --- Summary cache ---


def get_summary_cache(
    conn: sqlite3.Connection, canonical_hash: str, digest_language: str
) -> SummaryCacheEntry | None:
    row = conn.execute(
        """SELECT * FROM summary_cache
           WHERE canonical_hash = ? AND digest_language = ?""",
        (canonical_hash, digest_language),
    ).fetchone()
    if not row:
        return None
    return SummaryCacheEntry(
        canonical_hash=row["canonical_hash"],
        digest_language=row["digest_language"],
        summary=row["summary"],
        topic=row["topic"],
        language=row["language"],
        relevance_score=row["relevance_score"],
        importance_score=row["importance_score"],
        updated_at=_parse_dt(row["updated_at"]),
    )


def upsert_summary_cache(conn: sqlite3.Connection, entry: SummaryCacheEntry) -> None:
    conn.execute(
        """INSERT INTO summary_cache
           (canonical_hash, digest_language, summary, topic, language,
            relevance_score, importance_score, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(canonical_hash, digest_language) DO UPDATE SET
               summary = excluded.summary,
               topic = excluded.topic,
               language = excluded.language,
               relevance_score = excluded.relevance_score,
               importance_score = excluded.importance_score,
               updated_at = excluded.updated_at""",
        (
            entry.canonical_hash,
            entry.digest_language,
            entry.summary,
            entry.topic,
            entry.language,
            entry.relevance_score,
            entry.importance_score,
            _dt_str(entry.updated_at),
        ),
    )
    conn.commit()


# --- Channel stats ---


def get_channel_stats(conn: sqlite3.Connection) -> dict[str, ChannelStats]:
    rows = conn.execute("SELECT * FROM channel_stats").fetchall()
    return {
        row["channel_id"]: ChannelStats(
            channel_id=row["channel_id"],
            avg_relevance=row["avg_relevance"],
            stddev_relevance=row["stddev_relevance"],
            avg_importance=row["avg_importance"],
            stddev_importance=row["stddev_importance"],
        )
        for row in rows
    }


def upsert_channel_stats(conn: sqlite3.Connection, stats: ChannelStats) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO channel_stats
           (channel_id, avg_relevance, stddev_relevance, avg_importance,
            stddev_importance, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            stats.channel_id,
            stats.avg_relevance,
            stats.stddev_relevance,
            stats.avg_importance,
            stats.stddev_importance,
            _dt_str(utcnow()),
        ),
    )
    conn.commit()


# --- Follow-up queues ---


def enqueue_factcheck(conn: sqlite3.Connection, item_id: str, claim: str, normalized_claim: str) -> bool:
    """Queue a claim for fact-checking. Returns False if the item was already queued."""
    cur = conn.execute(
        """INSERT OR IGNORE INTO factcheck_queue
           (item_id, claim, normalized_claim, status, created_at)
           VALUES (?, ?, ?, 'pending', ?)""",
        (item_id, claim, normalized_claim, _dt_str(utcnow())),
    )
    conn.commit()
    return cur.rowcount > 0


def count_pending_factchecks(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM factcheck_queue WHERE status IN ('pending', 'claimed')"
    ).fetchone()
    return row["n"]


def enqueue_enrichment(conn: sqlite3.Connection, item_id: str, summary: str) -> bool:
    cur = conn.execute(
        """INSERT OR IGNORE INTO enrichment_queue (item_id, summary, status, created_at)
           VALUES (?, ?, 'pending', ?)""",
        (item_id, summary, _dt_str(utcnow())),
    )
    conn.commit()
    return cur.rowcount > 0


def count_pending_enrichments(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM enrichment_queue WHERE status IN ('pending', 'claimed')"
    ).fetchone()
    return row["n"]


# --- Settings and filters ---


def get_setting(conn: sqlite3.Connection, key: str) -> str | None:
    """Raw JSON text stored for ``key``."""
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def delete_setting(conn: sqlite3.Connection, key: str) -> None:
    conn.execute("DELETE FROM settings WHERE key = ?", (key,))
    conn.commit()


def save_setting_with_history(
    conn: sqlite3.Connection, key: str, value_json: str, changed_by: str = ""
) -> None:
    now_s = _dt_str(utcnow())
    old = get_setting(conn, key)
    conn.execute(
        """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
        (key, value_json, now_s),
    )
    conn.execute(
        """INSERT INTO settings_history (key, old_value, new_value, changed_by, changed_at)
           VALUES (?, ?, ?, ?, ?)""",
        (key, old, value_json, changed_by, now_s),
    )
    conn.commit()


def get_settings_history(conn: sqlite3.Connection, key: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM settings_history WHERE key = ? ORDER BY id", (key,)
    ).fetchall()
    return [dict(row) for row in rows]


def insert_filter(conn: sqlite3.Connection, rule: FilterRule) -> int:
    cur = conn.execute(
        "INSERT INTO filters (type, pattern, is_active) VALUES (?, ?, ?)",
        (rule.type, rule.pattern, int(rule.is_active)),
    )
    conn.commit()
    return cur.lastrowid


def get_active_filters(conn: sqlite3.Connection) -> list[FilterRule]:
    rows = conn.execute(
        "SELECT type, pattern, is_active FROM filters WHERE is_active = 1 ORDER BY id"
    ).fetchall()
    return [
        FilterRule(type=row["type"], pattern=row["pattern"], is_active=True)
        for row in rows
    ]


def get_weighted_rating_summary(
    conn: sqlite3.Connection,
    channel_id: str,
    since: datetime,
    half_life_days: float,
    now: datetime | None = None,
) -> RatingSummary:
    """Ratings for the channel, each weighted by 0.5^(age / half_life)."""
    now = now or utcnow()
    summary = RatingSummary()
    for rating, created_at in get_channel_ratings(conn, channel_id, since):
        age_days = max((now - created_at).total_seconds() / 86400, 0.0)
        weight = 0.5 ** (age_days / half_life_days) if half_life_days > 0 else 1.0
        if rating == "good":
            summary.weighted_good += weight
        elif rating == "bad":
            summary.weighted_bad += weight
        elif rating == "irrelevant":
            summary.weighted_irrelevant += weight
        else:
            continue
        summary.weighted_total += weight
        summary.total_count += 1
    return summary
