"""Prometheus metrics for the pipeline worker."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

messages_processed_total = Counter(
    "chatdigest_messages_processed_total",
    "Raw messages that produced an item",
    ["status"],
)

messages_dropped_total = Counter(
    "chatdigest_messages_dropped_total",
    "Raw messages dropped before producing an item",
    ["reason"],
)

backlog_messages = Gauge(
    "chatdigest_backlog_messages",
    "Raw messages not yet processed",
)

batch_duration_seconds = Histogram(
    "chatdigest_batch_duration_seconds",
    "Wall time of one pipeline batch",
)

oracle_latency_seconds = Histogram(
    "chatdigest_oracle_latency_seconds",
    "Latency of oracle calls",
    ["task"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

message_age_seconds = Histogram(
    "chatdigest_message_age_seconds",
    "Age of a message when its item is stored",
    buckets=(10, 30, 60, 300, 900, 3600, 14400, 86400),
)

llm_tokens_total = Counter(
    "chatdigest_llm_tokens_total",
    "Tokens consumed by LLM calls",
    ["model", "direction"],
)

bullet_dedup_total = Counter(
    "chatdigest_bullet_dedup_total",
    "Bullet dedup outcomes",
    ["outcome"],
)

irrelevant_similarity_total = Counter(
    "chatdigest_irrelevant_similarity_total",
    "Items penalized for resembling irrelevant-rated items",
    ["action"],
)

channel_bias_applied_total = Counter(
    "chatdigest_channel_bias_applied_total",
    "Items whose scores were nudged by channel ratings",
)

queue_enqueue_total = Counter(
    "chatdigest_queue_enqueue_total",
    "Follow-up queue enqueue attempts",
    ["queue", "outcome"],
)

stuck_recovered_total = Counter(
    "chatdigest_stuck_recovered_total",
    "Claims released by stuck-message recovery",
)


def start_metrics_server(config: dict) -> bool:
    """Expose /metrics if a port is configured."""
    port = int(config.get("metrics", {}).get("port", 0) or 0)
    if port <= 0:
        return False
    start_http_server(port)
    logger.info("Metrics exporter listening on :%d", port)
    return True
