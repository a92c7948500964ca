"""Load configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

_ENV_RE = re.compile(r"\$\{([^}]+)\}")


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        match = _ENV_RE.search(value)
        if match:
            if match.group(0) == value:
                return os.environ.get(match.group(1), "")
            return _ENV_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def get_llm_task_config(config: dict, task: str) -> dict:
    """Get provider name and model for a given LLM task.

    Tasks without their own routing entry inherit the ``summarize`` route.
    """
    tasks = config.get("llm", {}).get("tasks", {})
    task_cfg = tasks.get(task) or tasks.get("summarize", {})
    provider_name = task_cfg.get("provider", "openai")
    model_override = task_cfg.get("model")

    providers = config.get("llm", {}).get("providers", {})
    provider_cfg = providers.get(provider_name, {})

    return {
        "provider_name": provider_name,
        "provider_type": provider_cfg.get("type", "openai_compatible"),
        "api_key": provider_cfg.get("api_key", ""),
        "base_url": provider_cfg.get("base_url", ""),
        "model": model_override or provider_cfg.get("default_model", "gpt-4o-mini"),
        "max_retries": provider_cfg.get("max_retries", 3),
        "timeout": provider_cfg.get("timeout", 120),
        "json_mode": provider_cfg.get("json_mode", False),
    }


def get_embedding_config(config: dict) -> dict:
    """Embedding backend settings with defaults filled in."""
    cfg = config.get("embeddings", {})
    return {
        "provider": cfg.get("provider", "model2vec"),
        "model": cfg.get("model", "minishlab/potion-base-8M"),
        "base_url": cfg.get("base_url", ""),
        "api_key": cfg.get("api_key", ""),
        "dimensions": int(cfg.get("dimensions", 1536)),
        "timeout": cfg.get("timeout", 30),
        "max_retries": cfg.get("max_retries", 3),
    }


def get_factcheck_config(config: dict) -> dict:
    cfg = config.get("factcheck", {})
    return {
        "enabled": bool(cfg.get("enabled", False)),
        "api_key": cfg.get("api_key", ""),
        "min_claim_length": int(cfg.get("min_claim_length", 40)),
        "queue_max": int(cfg.get("queue_max", 5000)),
    }


def get_enrichment_config(config: dict) -> dict:
    cfg = config.get("enrichment", {})
    return {
        "enabled": bool(cfg.get("enabled", False)),
        "queue_max": int(cfg.get("queue_max", 5000)),
    }


def get_pipeline_defaults(config: dict) -> dict:
    """Environment-level overrides for pipeline settings keys."""
    return dict(config.get("pipeline", {}) or {})


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/chatdigest.db")
