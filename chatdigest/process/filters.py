"""Message filters: boilerplate, forwards, emoji, length, patterns and ads."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chatdigest.models import FilterRule, RawMessage
from chatdigest.process.text import (
    SHORT_MESSAGE_THRESHOLD,
    combine_preview_text,
    detect_language,
    extract_preview,
    extract_urls,
    extract_urls_from_json,
    looks_like_url,
)
from chatdigest.settings import PipelineSettings

logger = logging.getLogger(__name__)

DROP_DUPLICATE_BATCH = "duplicate_batch"
DROP_FORWARDED = "forwarded"
DROP_BOILERPLATE = "boilerplate"
DROP_FORWARD_SHELL = "forward_shell"
DROP_EMOJI_ONLY = "emoji_only"
DROP_MIN_LENGTH = "min_length"
DROP_PATTERN_DENY = "pattern_deny"
DROP_ADS = "ads"
DROP_RELEVANCE_GATE = "relevance_gate"
DROP_DEDUP_SEMANTIC_BATCH = "dedup_semantic_batch"
DROP_DEDUP_SEMANTIC_SAME_CHANNEL = "dedup_semantic_same_channel"
DROP_DEDUP_SEMANTIC_GLOBAL = "dedup_semantic_global"
DROP_DEDUP_STRICT_GLOBAL = "dedup_strict_global"

BOILERPLATE_PREFIXES = (
    "subscribe", "share this", "share", "donate", "support us", "follow",
    "подпис", "поддерж", "подел", "донат", "спонсор",
)


@dataclass
class FilterDecision:
    """Outcome of the basic filters for one message."""

    text: str = ""
    preview: str = ""
    drop_reason: str = ""
    drop_detail: str = ""

    @property
    def dropped(self) -> bool:
        return bool(self.drop_reason)


def _is_boilerplate_line(line: str) -> bool:
    lower = line.strip().lstrip("👉➡️🔔📢✅•-*> ").lower()
    return lower.startswith(BOILERPLATE_PREFIXES)


def strip_footer_boilerplate(text: str) -> str:
    """Remove a trailing call-to-action block (subscribe/share/donate links)."""
    lines = text.rstrip().split("\n")
    footer_start = None
    for i in range(len(lines) - 1, -1, -1):
        if not lines[i].strip():
            footer_start = i + 1
            break
    if footer_start is None:
        if len(lines) < 3:
            return text.strip()
        footer_start = len(lines) - 2
    if footer_start >= len(lines):
        return text.strip()

    footer = [line for line in lines[footer_start:] if line.strip()]
    keyword_lines = sum(1 for line in footer if _is_boilerplate_line(line))
    url_lines = sum(1 for line in footer if looks_like_url(line))
    if keyword_lines >= 2 or (keyword_lines >= 1 and url_lines >= 1):
        return "\n".join(lines[:footer_start]).strip()
    return text.strip()


def is_boilerplate_only(text: str) -> bool:
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return False
    return all(_is_boilerplate_line(line) and not looks_like_url(line) for line in lines)


def is_emoji_only(text: str) -> bool:
    stripped = text.strip()
    return bool(stripped) and not any(ch.isalnum() for ch in stripped)


def has_link(msg: RawMessage, text: str) -> bool:
    return bool(
        extract_urls(text)
        or extract_urls_from_json(msg.entities_json)
        or extract_urls_from_json(msg.media_json)
    )


class Filterer:
    """Allow/deny pattern and ads keyword matching."""

    def __init__(self, rules: list[FilterRule], ads_enabled: bool, ads_keywords: list[str], mode: str = "mixed"):
        self.ads_enabled = ads_enabled
        self.ads_keywords = [k.casefold() for k in ads_keywords if k.strip()]
        self.mode = mode if mode in ("mixed", "allowlist", "denylist") else "mixed"
        self.allow: list[re.Pattern] = []
        self.deny: list[re.Pattern] = []
        for rule in rules:
            if not rule.is_active:
                continue
            try:
                pattern = re.compile(rule.pattern, re.IGNORECASE)
            except re.error:
                pattern = re.compile(re.escape(rule.pattern), re.IGNORECASE)
            if rule.type == "allow":
                self.allow.append(pattern)
            elif rule.type == "deny":
                self.deny.append(pattern)

    def check(self, text: str) -> tuple[str, str]:
        """Return (reason, detail); empty reason means the message passes."""
        if self.ads_enabled:
            folded = text.casefold()
            for keyword in self.ads_keywords:
                if keyword in folded:
                    return DROP_ADS, keyword
        for pattern in self.deny:
            if pattern.search(text):
                return DROP_PATTERN_DENY, pattern.pattern
        if self.mode != "denylist" and self.allow:
            if not any(p.search(text) for p in self.allow):
                return DROP_PATTERN_DENY, "allow_miss"
        return "", ""


def apply_basic_filters(
    msg: RawMessage,
    settings: PipelineSettings,
    filterer: Filterer,
    seen_hashes: dict[str, str],
) -> FilterDecision:
    """Run the cheap per-message filters in order; first failure wins.

    ``seen_hashes`` maps canonical hash to the first raw message id that
    passed in this batch.
    """
    if msg.canonical_hash and msg.canonical_hash in seen_hashes:
        return FilterDecision(
            drop_reason=DROP_DUPLICATE_BATCH, drop_detail=seen_hashes[msg.canonical_hash],
        )

    preview = extract_preview(msg.media_json)
    raw_text = msg.text.strip()
    text = strip_footer_boilerplate(raw_text) if raw_text else ""
    if preview and len(text) < SHORT_MESSAGE_THRESHOLD and preview not in text:
        text = (text + "\n\n" + preview).strip()
    decision = FilterDecision(text=text, preview=preview)

    if raw_text and not text:
        decision.drop_reason, decision.drop_detail = DROP_BOILERPLATE, "footer_only"
        return decision

    if msg.is_forward and not raw_text:
        decision.drop_reason = DROP_FORWARD_SHELL
        return decision
    if msg.is_forward and settings.skip_forwards:
        decision.drop_reason = DROP_FORWARDED
        return decision

    linked = has_link(msg, raw_text)
    if is_emoji_only(text) and not linked and not preview:
        decision.drop_reason = DROP_EMOJI_ONLY
        return decision

    if is_boilerplate_only(text):
        decision.drop_reason, decision.drop_detail = DROP_BOILERPLATE, "cta_only"
        return decision

    language = detect_language(combine_preview_text(raw_text, preview))
    min_length = 0 if (linked or preview) else settings.min_length_for(language)
    if len(text) < min_length:
        decision.drop_reason = DROP_MIN_LENGTH
        decision.drop_detail = f"{len(text)}<{min_length}"
        return decision

    reason, detail = filterer.check(text)
    if reason:
        decision.drop_reason, decision.drop_detail = reason, detail
    return decision
