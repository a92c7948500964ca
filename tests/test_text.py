"""Tests for text preparation helpers."""

from __future__ import annotations

import json

from chatdigest.process.text import (
    detect_language,
    extract_domain,
    extract_preview,
    extract_urls,
    extract_urls_from_json,
    has_unique_info,
    is_weak_summary,
    needs_translation,
    normalize_language,
    pick_lead_sentence,
    post_process_summary,
    resolve_item_language,
    split_sentences,
    strip_html,
    truncate_on_word,
)

EN_PHRASES = ["summary:", "summary", "digest:", "digest", "tl;dr:", "tldr:"]


def test_detect_language():
    assert detect_language("Привет, как дела у всех сегодня") == "ru"
    assert detect_language("Привіт, як справи у всіх сьогодні") == "uk"
    assert detect_language("Hello everyone, news from the city") == "en"
    assert detect_language("12345 !!!") == ""
    assert detect_language("") == ""


def test_detect_language_mixed_script():
    """A mostly Latin text with some Cyrillic counts as Cyrillic above 30%."""
    assert detect_language("Zelensky сказал") == "ru"
    assert detect_language("Breaking news from Kharkiv today: мир") == "en"


def test_normalize_language():
    assert normalize_language("Russian") == "ru"
    assert normalize_language("en-US") == "en"
    assert normalize_language("ua") == "uk"
    assert normalize_language("de") == "de"
    assert normalize_language("deutsch") == ""
    assert normalize_language("") == ""


def test_resolve_item_language_order():
    assert resolve_item_language("Hello from Kyiv today", "", "ru") == ("en", "original")
    assert resolve_item_language("", "Новости дня", "en") == ("ru", "preview")
    assert resolve_item_language("🔥", "", "English") == ("en", "summary")


def test_needs_translation():
    assert needs_translation("Hello world", "en", "ru") is True
    assert needs_translation("Hello world", "en", "en") is False
    # Ukrainian letters force translation into Russian even if detection said ru
    assert needs_translation("Київ сьогодні", "ru", "ru") is True
    assert needs_translation("", "en", "ru") is False
    assert needs_translation("Hello", "", "ru") is False


def test_extract_urls_trims_punctuation():
    text = "See https://example.com/a, and t.me/chan/5. Also (https://news.org/x)"
    assert extract_urls(text) == ["https://example.com/a", "t.me/chan/5", "https://news.org/x"]


def test_extract_urls_from_json_walks_nested():
    raw = json.dumps({
        "entities": [{"Type": "TextUrl", "URL": "https://a.com"}],
        "media": {"webpage": {"url": "https://b.com"}},
    })
    assert extract_urls_from_json(raw) == ["https://a.com", "https://b.com"]
    assert extract_urls_from_json("not json") == []
    assert extract_urls_from_json("") == []


def test_extract_domain():
    assert extract_domain("https://www.Example.com/path") == "example.com"
    assert extract_domain("t.me/channel") == "t.me"
    assert extract_domain("") == ""


def test_extract_preview():
    media = json.dumps({"Webpage": {"Title": "Tram plan", "Description": "Council vote", "SiteName": "City News"}})
    assert extract_preview(media) == "Tram plan. Council vote. City News"
    assert extract_preview(json.dumps({"webpage": {"title": "Lower"}})) == "Lower"
    assert extract_preview(json.dumps({"Photo": {}})) == ""
    assert extract_preview("[1, 2]") == ""


def test_strip_html():
    assert strip_html("<b>a &amp; b</b>") == "a & b"


def test_split_sentences():
    assert split_sentences("One. Two! Three? Four") == ["One.", "Two!", "Three?", "Four"]


def test_post_process_strips_label():
    text = post_process_summary("Summary: Kyiv approved the plan. It starts in May.", EN_PHRASES, 300)
    assert text == "Kyiv approved the plan. It starts in May."


def test_post_process_label_must_be_a_whole_word():
    text = post_process_summary("Digestive health clinics open in Lviv on Monday.", EN_PHRASES, 300)
    assert text == "Digestive health clinics open in Lviv on Monday."
    assert post_process_summary("Digest - Lviv opens 3 clinics.", EN_PHRASES, 300) == "Lviv opens 3 clinics."


def test_post_process_keeps_two_sentences_at_most():
    text = post_process_summary("First fact here. Second short one. Third is dropped.", EN_PHRASES, 300)
    assert text == "First fact here. Second short one."


def test_post_process_drops_long_second_sentence():
    second = "This second sentence is deliberately long enough to go past the eighty character limit."
    text = post_process_summary("Short lead. " + second, EN_PHRASES, 300)
    assert text == "Short lead."


def test_post_process_truncates_on_word():
    text = post_process_summary("alpha beta gamma delta epsilon", [], 14)
    assert text == "alpha beta"
    assert post_process_summary("   ", EN_PHRASES, 300) == ""


def test_truncate_on_word():
    assert truncate_on_word("one two three four five", 12) == "one two"
    assert truncate_on_word("short", 100) == "short"
    assert truncate_on_word("anything", 0) == "anything"


def test_is_weak_summary():
    assert is_weak_summary("Too short")
    assert is_weak_summary("<b>x</b> " * 3)
    assert not is_weak_summary("The council approved a budget of 120 million for new tram lines.")


def test_pick_lead_sentence_prefers_facts():
    text = "Wow!!! 🔥🔥\nJohn Smith announced 3 new routes. Stay tuned."
    assert pick_lead_sentence(text) == "John Smith announced 3 new routes."


def test_pick_lead_sentence_skips_urls_and_symbols():
    assert pick_lead_sentence("https://example.com/story\n🔥🔥🔥") == ""


def test_has_unique_info():
    assert has_unique_info("John raised 25M Monday")
    assert has_unique_info("в Киеве сегодня")
    assert has_unique_info("talks resume tomorrow")
    assert not has_unique_info("something happened somewhere")
