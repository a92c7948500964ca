"""Tests for bullet extraction rules."""

from __future__ import annotations

from chatdigest.models import ExtractedBullet
from chatdigest.process.bullets import (
    MIN_MESSAGE_LENGTH_FOR_MULTI_BULLETS,
    apply_length_rules,
    build_bullet_rows,
    bullet_hash,
    dedupe_bullets,
    finalize_bullets,
)

LONG_MESSAGE = (
    "The city council approved a budget of 120 million for new tram lines on Monday. "
    "Construction starts in April and the first line opens in 2027."
)


def _b(text, importance=0.5, relevance=0.5, topic=""):
    return ExtractedBullet(text=text, topic=topic, relevance_score=relevance, importance_score=importance)


def test_bullet_hash_is_normalized_and_short():
    h = bullet_hash("Budget  approved")
    assert h == bullet_hash("  budget approved ")
    assert len(h) == 32


def test_dedupe_bullets_normalizes_text():
    bullets = dedupe_bullets([_b("Budget approved"), _b("budget   APPROVED"), _b(""), _b("Trams ordered")])
    assert [b.text for b in bullets] == ["Budget approved", "Trams ordered"]


def test_short_message_keeps_best_bullet():
    message = "Budget of 120M approved for trams."
    assert len(message) < MIN_MESSAGE_LENGTH_FOR_MULTI_BULLETS
    kept = apply_length_rules([_b("Budget approved", 0.4), _b("Trams funded", 0.9)], message)
    assert [b.text for b in kept] == ["Trams funded"]


def test_short_message_drops_oversized_bullet():
    assert apply_length_rules([_b("x" * 50)], "tiny message") == []


def test_long_message_caps_total_length():
    first = "Council approved 120 million for trams."
    second = "Construction starts in April."
    third = "The first line opens in 2027 after a long public consultation period ends next month."
    kept = apply_length_rules([_b(first), _b(second), _b(third)], LONG_MESSAGE)
    assert [b.text for b in kept] == [first, second]


def test_finalize_bullets_scores_and_counts():
    outcome = finalize_bullets(
        [
            _b("Council approved 120 million.", importance=0.9, relevance=0.7),
            _b("Construction starts in April.", importance=0.3, relevance=0.8),
        ],
        LONG_MESSAGE,
        min_importance=0.4,
    )
    assert outcome.total_count == 2
    assert outcome.included_count == 1
    assert outcome.max_importance == 0.9
    assert outcome.max_relevance == 0.8


def test_finalize_bullets_empty():
    outcome = finalize_bullets([], LONG_MESSAGE, 0.4)
    assert outcome.total_count == 0
    assert outcome.included_count == 0


def test_build_bullet_rows():
    outcome = finalize_bullets(
        [_b("Council approved 120 million.", topic="Budget"), _b("Construction starts in April.")],
        LONG_MESSAGE,
        0.4,
    )
    rows = build_bullet_rows("item-1", "", outcome)
    assert [r.bullet_index for r in rows] == [0, 1]
    assert rows[0].topic == "Budget"
    assert rows[0].status == "pending"
    assert rows[0].bullet_hash == bullet_hash("Council approved 120 million.")

    # The item topic wins over the bullet's own
    assert build_bullet_rows("item-1", "City", outcome)[0].topic == "City"
