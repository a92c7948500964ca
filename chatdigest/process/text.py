"""Text preparation: previews, language detection, summary cleanup."""

from __future__ import annotations

import html
import json
import logging
import re
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SHORT_MESSAGE_THRESHOLD = 120
WEAK_SUMMARY_MIN_CHARS = 60
WEAK_SUMMARY_MIN_TOKENS = 6
SECOND_SENTENCE_MAX_CHARS = 80
LEAD_SENTENCE_MAX_CHARS = 200

CYRILLIC_RATIO_MIN = 0.3
LATIN_RATIO_MIN = 0.5
UKRAINIAN_LETTERS = set("ЄєІіЇїҐґ")

URL_RE = re.compile(r"(?i)\bhttps?://\S+|\bt\.me/\S+")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_SENTENCE_END_RE = re.compile(r"([.!?…]+)\s+")

_NUMBER_RE = re.compile(r"\b\d{1,4}([:/.-]\d{1,2})?\b")
_NAME_PAIR_RE = re.compile(r"\b[A-ZА-ЯЁІЇЄҐ]\w+\s+[A-ZА-ЯЁІЇЄҐ]\w+\b")
_MENTION_RE = re.compile(r"[@#]\w+")
_ACRONYM_RE = re.compile(r"\b[A-Z]{2,5}\b")

_UNIQUE_INFO_RE = re.compile(
    r"[A-Z][a-z]+|[А-ЯЁІЇЄҐ][а-яёіїєґ']+|\d+|"
    r"(?i:\b(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"today|yesterday|tomorrow|сегодня|вчера|завтра|сьогодні|вчора)\b)"
)

_LANGUAGE_ALIASES = {
    "en": "en", "eng": "en", "english": "en",
    "ru": "ru", "rus": "ru", "russian": "ru", "русский": "ru",
    "uk": "uk", "ukr": "uk", "ua": "uk", "ukrainian": "uk", "українська": "uk",
}


def strip_html(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text))


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def looks_like_url(line: str) -> bool:
    lower = line.strip().lower()
    return lower.startswith(("http://", "https://", "t.me/"))


def extract_urls(text: str) -> list[str]:
    return [m.group(0).rstrip(".,;:!?)]}»\"'") for m in URL_RE.finditer(text or "")]


def extract_urls_from_json(raw: str) -> list[str]:
    """Collect every string under a ``url`` key (any case) in a JSON payload."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return []

    found: list[str] = []

    def walk(node):
        if isinstance(node, dict):
            for key, value in node.items():
                if key.lower() == "url" and isinstance(value, str) and value:
                    found.append(value)
                else:
                    walk(value)
        elif isinstance(node, list):
            for child in node:
                walk(child)

    walk(data)
    return found


def extract_domain(url: str) -> str:
    """Lowercased host without a leading www."""
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def extract_preview(media_json: str) -> str:
    """Join title, description and site name of a web page preview."""
    if not media_json:
        return ""
    try:
        data = json.loads(media_json)
    except (json.JSONDecodeError, ValueError):
        return ""
    if not isinstance(data, dict):
        return ""
    page = data.get("Webpage") or data.get("webpage")
    if not isinstance(page, dict):
        return ""
    parts = []
    for key in ("Title", "Description", "SiteName"):
        value = page.get(key) or page.get(key.lower()) or ""
        if isinstance(value, str) and value.strip():
            parts.append(value.strip())
    return ". ".join(parts)


def combine_preview_text(text: str, preview: str) -> str:
    """Text used for language detection and length checks."""
    text = text.strip()
    if not preview:
        return text
    if not text:
        return preview
    if len(text) < SHORT_MESSAGE_THRESHOLD and preview not in text:
        return text + "\n\n" + preview
    return text


def detect_language(text: str) -> str:
    """Guess ru, uk or en by script ratios; '' when unsure."""
    letters = cyrillic = latin = 0
    has_ukrainian = False
    for ch in text:
        if not ch.isalpha():
            continue
        letters += 1
        if "\u0400" <= ch <= "\u04ff":
            cyrillic += 1
            if ch in UKRAINIAN_LETTERS:
                has_ukrainian = True
        elif ch.isascii():
            latin += 1
    if letters == 0:
        return ""
    if cyrillic / letters >= CYRILLIC_RATIO_MIN:
        return "uk" if has_ukrainian else "ru"
    if latin / letters >= LATIN_RATIO_MIN:
        return "en"
    return ""


def normalize_language(language: str) -> str:
    """Map oracle-reported names like 'Russian' or 'ru-RU' to a short code."""
    lang = (language or "").strip().lower()
    if not lang:
        return ""
    lang = re.split(r"[-_\s]", lang, maxsplit=1)[0]
    return _LANGUAGE_ALIASES.get(lang, lang if len(lang) == 2 else "")


def has_ukrainian_letters(text: str) -> bool:
    return any(ch in UKRAINIAN_LETTERS for ch in text)


def resolve_item_language(text: str, preview: str, oracle_language: str) -> tuple[str, str]:
    """Return (language, source) trying the message, then its preview, then the oracle."""
    lang = detect_language(text)
    if lang:
        return lang, "original"
    lang = detect_language(preview)
    if lang:
        return lang, "preview"
    return normalize_language(oracle_language), "summary"


def needs_translation(summary: str, detected: str, target: str) -> bool:
    target = normalize_language(target)
    if not target or not summary:
        return False
    if target == "ru" and has_ukrainian_letters(summary):
        return True
    detected = normalize_language(detected)
    return bool(detected) and detected != target


def split_sentences(text: str) -> list[str]:
    sentences = []
    start = 0
    for match in _SENTENCE_END_RE.finditer(text):
        sentence = text[start:match.start()] + match.group(1)
        if sentence.strip():
            sentences.append(sentence.strip())
        start = match.end()
    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def truncate_on_word(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;:-")


def post_process_summary(summary: str, strip_phrases: list[str], max_chars: int) -> str:
    """Drop a leading label, keep at most two sentences, cap the length."""
    text = summary.strip()
    lower = text.lower()
    for phrase in strip_phrases:
        phrase = phrase.strip().lower()
        if not phrase or not lower.startswith(phrase):
            continue
        # word phrases match whole words only
        if phrase[-1].isalnum() and lower[len(phrase):len(phrase) + 1].isalnum():
            continue
        text = text[len(phrase):].lstrip(" :-—–\t\n")
        break
    text = collapse_whitespace(text)
    if not text:
        return ""

    sentences = split_sentences(text)
    if len(sentences) > 1:
        kept = sentences[0]
        if len(sentences[1]) <= SECOND_SENTENCE_MAX_CHARS:
            kept += " " + sentences[1]
        text = kept

    return truncate_on_word(text, max_chars)


def is_weak_summary(summary: str) -> bool:
    plain = collapse_whitespace(strip_html(summary))
    return len(plain) < WEAK_SUMMARY_MIN_CHARS or len(plain.split()) < WEAK_SUMMARY_MIN_TOKENS


def _mostly_symbols(sentence: str) -> bool:
    visible = [ch for ch in sentence if not ch.isspace()]
    if not visible:
        return True
    alnum = sum(1 for ch in visible if ch.isalnum())
    return alnum * 2 < len(visible)


def _lead_score(sentence: str) -> int:
    score = 0
    if _NUMBER_RE.search(sentence):
        score += 2
    if _NAME_PAIR_RE.search(sentence):
        score += 2
    if _MENTION_RE.search(sentence):
        score += 1
    if _ACRONYM_RE.search(sentence):
        score += 1
    return score


def pick_lead_sentence(text: str) -> str:
    """Most informative short sentence of the message, or ''."""
    best = ""
    best_score = -1
    for line in strip_html(text).splitlines():
        for sentence in split_sentences(collapse_whitespace(line)):
            if len(sentence) > LEAD_SENTENCE_MAX_CHARS or _mostly_symbols(sentence):
                continue
            if looks_like_url(sentence):
                continue
            score = _lead_score(sentence)
            if score > best_score or (score == best_score and len(sentence) > len(best)):
                best, best_score = sentence, score
    return best


def has_unique_info(summary: str) -> bool:
    return bool(_UNIQUE_INFO_RE.search(strip_html(summary)))
