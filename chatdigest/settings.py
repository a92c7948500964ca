"""Typed access to pipeline settings.

Values resolve in three layers: compile-time defaults, the ``pipeline``
section of the config file, then per-key JSON overrides from the settings
table. Only a closed set of value kinds is supported; anything that fails to
parse is treated as absent and the next layer wins.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from chatdigest.store import BaseStore

logger = logging.getLogger(__name__)

BOOL = "bool"
INT = "int"
FLOAT = "float"
DURATION = "duration"
STR = "str"
STR_LIST = "str_list"

KINDS = {BOOL, INT, FLOAT, DURATION, STR, STR_LIST}

BULLET_BATCH_SIZE_LIMIT = 5

DEFAULT_ADS_KEYWORDS = ["#ad", "sponsored", "promo", "подпишись", "купи", "зарабатывай", "выигрывай"]

DEFAULT_STRIP_PHRASES = [
    "summary:", "summary", "digest:", "digest",
    "сводка:", "итог:", "итоги:", "дайджест:",
]
DEFAULT_STRIP_PHRASES_BY_LANG = {
    "en": ["summary:", "summary", "digest:", "digest", "tl;dr:", "tldr:"],
    "ru": ["сводка:", "итог:", "итоги:", "дайджест:", "кратко:", "резюме:"],
    "uk": ["підсумок:", "підсумки:", "дайджест:", "коротко:", "резюме:"],
}

SUPPORTED_LANGUAGES = ("ru", "uk", "en")

# key -> (kind, default)
SETTING_SPECS: dict[str, tuple[str, Any]] = {
    "worker_batch_size": (INT, 10),
    "worker_poll_interval": (DURATION, timedelta(seconds=10)),
    "filters_ads": (BOOL, False),
    "filters_ads_keywords": (STR_LIST, DEFAULT_ADS_KEYWORDS),
    "filters_min_length": (INT, 20),
    "filters_skip_forwards": (BOOL, False),
    "filters_mode": (STR, "mixed"),
    "dedup_mode": (STR, "semantic"),
    "dedup_window": (DURATION, timedelta(hours=36)),
    "dedup_same_channel_window": (DURATION, timedelta(hours=6)),
    "cluster_similarity_threshold": (FLOAT, 0.75),
    "relevance_threshold": (FLOAT, 0.5),
    "digest_language": (STR, "en"),
    "digest_tone": (STR, ""),
    "tiered_importance_enabled": (BOOL, False),
    "tiered_importance_model": (STR, ""),
    "normalize_scores": (BOOL, False),
    "relevance_gate_enabled": (BOOL, False),
    "relevance_gate_mode": (STR, "heuristic"),
    "relevance_gate_model": (STR, ""),
    "bullet_mode_enabled": (BOOL, False),
    "bullet_min_importance": (FLOAT, 0.4),
    "bullet_batch_size": (INT, 3),
    "bullet_dedup_threshold": (FLOAT, 0.92),
    "bullet_dedup_interval": (DURATION, timedelta(minutes=5)),
    "bullet_dedup_lookback_hours": (INT, 48),
    "link_enrichment_enabled": (BOOL, False),
    "link_enrichment_scope": (STR, "summary"),
    "max_links_per_message": (INT, 3),
    "link_cache_ttl": (DURATION, timedelta(hours=24)),
    "tg_link_cache_ttl": (DURATION, timedelta(hours=1)),
    "domain_allowlist": (STR, ""),
    "domain_denylist": (STR, ""),
    "canonical_domains": (STR, ""),
    "summary_max_chars": (INT, 300),
    "summary_strip_phrases": (STR_LIST, DEFAULT_STRIP_PHRASES),
    "vision_routing_enabled": (BOOL, False),
    "vision_model": (STR, ""),
    "channel_context_limit": (INT, 5),
}
for _lang in SUPPORTED_LANGUAGES:
    SETTING_SPECS[f"summary_strip_phrases_{_lang}"] = (STR_LIST, DEFAULT_STRIP_PHRASES_BY_LANG[_lang])
    SETTING_SPECS[f"min_length_{_lang}"] = (INT, None)

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> timedelta | None:
    """Parse seconds (number) or strings such as '90s', '5m', '1h30m'."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if not text:
        return None
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        return None
    return timedelta(seconds=total)


def coerce(kind: str, value: Any) -> Any:
    """Convert a decoded value to ``kind``; None when it does not fit."""
    if value is None:
        return None
    if kind == BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
            return value.strip().lower() in ("true", "1")
        return None
    if kind == INT:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                return None
        return None
    if kind == FLOAT:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                return None
        return None
    if kind == DURATION:
        return parse_duration(value)
    if kind == STR:
        return value if isinstance(value, str) else None
    if kind == STR_LIST:
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return None
    raise ValueError(f"Unknown setting kind: {kind}")


@dataclass
class PipelineSettings:
    """Snapshot of effective settings, taken once per batch."""

    batch_size: int = 10
    poll_interval: timedelta = timedelta(seconds=10)
    filters_ads: bool = False
    ads_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_ADS_KEYWORDS))
    min_length: int = 20
    min_length_by_lang: dict[str, int] = field(default_factory=dict)
    skip_forwards: bool = False
    filters_mode: str = "mixed"
    dedup_mode: str = "semantic"
    dedup_window: timedelta = timedelta(hours=36)
    dedup_same_channel_window: timedelta = timedelta(hours=6)
    cluster_similarity_threshold: float = 0.75
    relevance_threshold: float = 0.5
    digest_language: str = "en"
    digest_tone: str = ""
    tiered_importance_enabled: bool = False
    tiered_importance_model: str = ""
    normalize_scores: bool = False
    relevance_gate_enabled: bool = False
    relevance_gate_mode: str = "heuristic"
    relevance_gate_model: str = ""
    bullet_mode_enabled: bool = False
    bullet_min_importance: float = 0.4
    bullet_batch_size: int = 3
    bullet_dedup_threshold: float = 0.92
    bullet_dedup_interval: timedelta = timedelta(minutes=5)
    bullet_dedup_lookback_hours: int = 48
    link_enrichment_enabled: bool = False
    link_enrichment_scope: str = "summary"
    max_links_per_message: int = 3
    link_cache_ttl: timedelta = timedelta(hours=24)
    tg_link_cache_ttl: timedelta = timedelta(hours=1)
    domain_allowlist: str = ""
    domain_denylist: str = ""
    canonical_domains: str = ""
    summary_max_chars: int = 300
    strip_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_STRIP_PHRASES))
    strip_phrases_by_lang: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_STRIP_PHRASES_BY_LANG.items()}
    )
    vision_routing_enabled: bool = False
    vision_model: str = ""
    channel_context_limit: int = 5

    def min_length_for(self, language: str) -> int:
        return self.min_length_by_lang.get(language, self.min_length)

    def strip_phrases_for(self, language: str) -> list[str]:
        return self.strip_phrases_by_lang.get(language) or self.strip_phrases

    def link_scope(self, scope: str) -> bool:
        """Whether resolved link text should feed the given stage."""
        return self.link_enrichment_enabled and scope in self.link_enrichment_scope.lower()


class SettingsReader:
    """Typed reads and audited writes against the settings table."""

    def __init__(self, store: BaseStore, env_defaults: dict | None = None):
        self.store = store
        self.env_defaults = env_defaults or {}

    async def get(self, key: str, kind: str) -> Any:
        """Stored override for ``key`` as ``kind``, or None if absent or unparsable."""
        if kind not in KINDS:
            raise ValueError(f"Unknown setting kind: {kind}")
        try:
            raw = await self.store.get_setting(key)
        except Exception:
            logger.warning("Failed to read setting %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            logger.debug("Setting %s is not valid JSON: %r", key, raw)
            return None
        value = coerce(kind, decoded)
        if value is None:
            logger.debug("Setting %s does not parse as %s: %r", key, kind, decoded)
        return value

    async def resolve(self, key: str) -> Any:
        """Effective value for a known key across all three layers."""
        kind, default = SETTING_SPECS[key]
        value = await self.get(key, kind)
        if value is not None:
            return value
        env_value = coerce(kind, self.env_defaults.get(key))
        if env_value is not None:
            return env_value
        return default

    async def save(self, key: str, value: Any, changed_by: str = "") -> None:
        if key in SETTING_SPECS:
            kind, _ = SETTING_SPECS[key]
            if isinstance(value, timedelta):
                value = value.total_seconds()
            if coerce(kind, value) is None:
                raise ValueError(f"Value {value!r} is not a valid {kind} for {key}")
        await self.store.save_setting(key, json.dumps(value, ensure_ascii=False), changed_by)

    async def delete(self, key: str) -> None:
        await self.store.delete_setting(key)

    async def load(self) -> PipelineSettings:
        """Build the per-batch settings snapshot."""
        v = {key: await self.resolve(key) for key in SETTING_SPECS}

        settings = PipelineSettings(
            batch_size=max(1, v["worker_batch_size"]),
            poll_interval=v["worker_poll_interval"],
            filters_ads=v["filters_ads"],
            ads_keywords=v["filters_ads_keywords"],
            min_length=v["filters_min_length"],
            skip_forwards=v["filters_skip_forwards"],
            filters_mode=v["filters_mode"].lower(),
            dedup_mode=v["dedup_mode"].lower(),
            dedup_window=v["dedup_window"],
            dedup_same_channel_window=v["dedup_same_channel_window"],
            cluster_similarity_threshold=v["cluster_similarity_threshold"],
            relevance_threshold=v["relevance_threshold"],
            digest_language=v["digest_language"].lower() or "en",
            digest_tone=v["digest_tone"],
            tiered_importance_enabled=v["tiered_importance_enabled"],
            tiered_importance_model=v["tiered_importance_model"],
            normalize_scores=v["normalize_scores"],
            relevance_gate_enabled=v["relevance_gate_enabled"],
            relevance_gate_mode=v["relevance_gate_mode"].lower(),
            relevance_gate_model=v["relevance_gate_model"],
            bullet_mode_enabled=v["bullet_mode_enabled"],
            bullet_min_importance=v["bullet_min_importance"],
            bullet_batch_size=min(max(1, v["bullet_batch_size"]), BULLET_BATCH_SIZE_LIMIT),
            bullet_dedup_threshold=v["bullet_dedup_threshold"],
            bullet_dedup_interval=v["bullet_dedup_interval"],
            bullet_dedup_lookback_hours=v["bullet_dedup_lookback_hours"],
            link_enrichment_enabled=v["link_enrichment_enabled"],
            link_enrichment_scope=v["link_enrichment_scope"],
            max_links_per_message=v["max_links_per_message"],
            link_cache_ttl=v["link_cache_ttl"],
            tg_link_cache_ttl=v["tg_link_cache_ttl"],
            domain_allowlist=v["domain_allowlist"],
            domain_denylist=v["domain_denylist"],
            canonical_domains=v["canonical_domains"],
            summary_max_chars=v["summary_max_chars"],
            strip_phrases=v["summary_strip_phrases"],
            vision_routing_enabled=v["vision_routing_enabled"],
            vision_model=v["vision_model"],
            channel_context_limit=v["channel_context_limit"],
        )
        for lang in SUPPORTED_LANGUAGES:
            settings.strip_phrases_by_lang[lang] = v[f"summary_strip_phrases_{lang}"]
            min_len = v[f"min_length_{lang}"]
            if min_len is not None:
                settings.min_length_by_lang[lang] = min_len

        if settings.bullet_mode_enabled and settings.batch_size > BULLET_BATCH_SIZE_LIMIT:
            settings.batch_size = BULLET_BATCH_SIZE_LIMIT
        return settings
