"""CLI entrypoint: python -m chatdigest {run|run-once|init-db|recover|dedup-bullets|stats}."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

from chatdigest.config import get_db_path, load_config
from chatdigest.db import (
    count_backlog,
    get_connection,
    get_drop_reason_counts,
    get_item_status_counts,
    init_db,
)
from chatdigest.log import CorrelationIdFilter


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    log_cfg = config.get("logging", {})
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO))

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    correlation = CorrelationIdFilter()

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    console.addFilter(correlation)
    root.addHandler(console)

    # File handler (rotate at 5MB, keep 3 backups)
    log_file = log_cfg.get("file")
    if not log_file:
        log_dir = Path(get_db_path(config)).parent
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "chatdigest.log"

    file_handler = logging.handlers.RotatingFileHandler(
        str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    file_handler.addFilter(correlation)
    root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("trafilatura").setLevel(logging.WARNING)


logger = logging.getLogger("chatdigest")


def _build_pipeline(config: dict):
    from chatdigest.links import get_link_resolver
    from chatdigest.llm.oracle import LLMOracle
    from chatdigest.pipeline import Pipeline
    from chatdigest.process.embeddings import get_embedding_client
    from chatdigest.store import SQLiteStore

    store = SQLiteStore.open(get_db_path(config))
    pipeline = Pipeline(
        config,
        store,
        LLMOracle(config),
        embedder=get_embedding_client(config),
        link_resolver=get_link_resolver(config),
    )
    return pipeline, store


def cmd_init_db(config: dict) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


async def cmd_run(config: dict) -> None:
    """Run the worker loop until interrupted."""
    from chatdigest.metrics import start_metrics_server

    start_metrics_server(config)
    pipeline, store = _build_pipeline(config)
    try:
        await pipeline.run()
    finally:
        store.close()


async def cmd_run_once(config: dict) -> None:
    """Process a single batch."""
    pipeline, store = _build_pipeline(config)
    try:
        claimed = await pipeline.process_next_batch()
        await pipeline.drain_background()
    finally:
        store.close()
    print(f"Processed batch of {claimed} messages")


async def cmd_recover(config: dict) -> None:
    """Release claims older than the stuck-message threshold."""
    pipeline, store = _build_pipeline(config)
    try:
        recovered = await pipeline.recover_stuck()
    finally:
        store.close()
    print(f"Recovered {recovered} stuck messages")


async def cmd_dedup_bullets(config: dict) -> None:
    """Run one bullet dedup pass."""
    pipeline, store = _build_pipeline(config)
    try:
        result = await pipeline.dedup_bullets()
    finally:
        store.close()
    print(f"Bullets: {result['duplicates']} duplicates, {result['canonical']} canonical")


def cmd_stats(config: dict) -> None:
    """Show backlog, item status and drop reason counts."""
    db_path = get_db_path(config)
    init_db(db_path)
    conn = get_connection(db_path)
    backlog = count_backlog(conn)
    statuses = get_item_status_counts(conn)
    drops = get_drop_reason_counts(conn)
    conn.close()

    print(f"Backlog: {backlog}")
    print("\nItems by status:")
    for status, n in sorted(statuses.items()):
        print(f"  {status:<12} {n:>8}")
    print("\nDrops by reason:")
    if not drops:
        print("  (none)")
    for reason, n in sorted(drops.items(), key=lambda kv: -kv[1]):
        print(f"  {reason:<30} {n:>8}")


COMMANDS = {
    "run": cmd_run,
    "run-once": cmd_run_once,
    "init-db": cmd_init_db,
    "recover": cmd_recover,
    "dedup-bullets": cmd_dedup_bullets,
    "stats": cmd_stats,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m chatdigest {{{available}}}")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    if asyncio.iscoroutinefunction(handler):
        try:
            asyncio.run(handler(config))
        except KeyboardInterrupt:
            logger.info("Interrupted")
    else:
        handler(config)


if __name__ == "__main__":
    main()
