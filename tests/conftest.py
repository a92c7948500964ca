"""Shared test fixtures."""

from __future__ import annotations

import pytest

from chatdigest.config import load_config
from chatdigest.db import get_connection, init_db
from chatdigest.llm import reset_providers
from chatdigest.store import SQLiteStore
from fakes import FakeEmbedder, FakeOracle, InMemoryStore


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real API keys)."""
    config_text = """
llm:
  providers:
    mock:
      type: "openai_compatible"
      api_key: "test-key"
      base_url: "http://localhost:9999"
      default_model: "test-model"
      max_retries: 0
  tasks:
    summarize: { provider: "mock" }
    summarize_tiered: { provider: "mock", model: "big-model" }
    translate: { provider: "mock" }
    relevance_gate: { provider: "mock" }
    bullets: { provider: "mock" }

embeddings:
  provider: "model2vec"
  model: "minishlab/potion-base-8M"
  dimensions: 64

links:
  enabled: false

pipeline:
  worker_batch_size: 10
  dedup_mode: "strict"
  channel_context_limit: 0

factcheck:
  enabled: false

enrichment:
  enabled: false

database:
  path: "DB_PATH_PLACEHOLDER"
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("DB_PATH_PLACEHOLDER", db_path))
    return load_config(str(cfg_path))


@pytest.fixture(autouse=True)
def _fresh_providers():
    reset_providers()
    yield
    reset_providers()


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def sqlite_store(db_conn):
    return SQLiteStore(db_conn)


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def fake_oracle():
    return FakeOracle()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def news_texts():
    """Long English posts that pass every basic filter."""
    return [
        "The city council of Lviv approved a budget of 120 million for new tram lines on Monday, "
        "with construction scheduled to start in April.",
        "Kyiv metro will extend operating hours until 1 am from next week, the transport "
        "department announced after a 3 month trial.",
        "Ukrenergo reported that 4 power units returned to service overnight and no outage "
        "schedules are planned for Tuesday.",
    ]
