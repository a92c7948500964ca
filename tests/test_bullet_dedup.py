"""Tests for cross-item bullet deduplication."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from chatdigest.db import get_bullets_by_item
from chatdigest.models import BULLET_DUPLICATE, BULLET_PENDING, BULLET_READY, utcnow
from chatdigest.process.bullet_dedup import find_bullet_duplicates, run_bullet_dedup
from fakes import InMemoryStore, make_bullet

A_VEC = [1.0, 0.0, 0.0]
# cos(A, B) = 0.95
B_VEC = [0.95, math.sqrt(1 - 0.95**2), 0.0]


def _scenario_bullets():
    a = make_bullet("item-x", 0.9, A_VEC, text="Council approved the tram budget")
    b = make_bullet("item-y", 0.8, B_VEC, text="Tram budget approved by the council")
    c = make_bullet("item-x", 0.7, A_VEC, bullet_index=1, text="Works start in April")
    return a, b, c


def test_find_duplicates_skips_same_item():
    a, b, c = _scenario_bullets()
    assert find_bullet_duplicates([a, b, c], 0.92) == {b.id: a.id}


def test_find_duplicates_below_threshold():
    a, b, _ = _scenario_bullets()
    assert find_bullet_duplicates([a, b], 0.96) == {}


def test_ready_bullets_are_never_marked():
    a, b, _ = _scenario_bullets()
    a.status = BULLET_READY
    b.status = BULLET_READY
    assert find_bullet_duplicates([a, b], 0.92) == {}


@pytest.mark.asyncio
async def test_run_bullet_dedup_scenario():
    store = InMemoryStore()
    a, b, c = _scenario_bullets()
    for bullet in (a, b, c):
        await store.insert_bullet(bullet)

    result = await run_bullet_dedup(store, threshold=0.92, lookback_hours=48)

    assert result == {"duplicates": 1, "canonical": 2}
    assert store.bullets[a.id].status == BULLET_READY
    assert store.bullets[a.id].bullet_cluster_id == a.id
    assert store.bullets[b.id].status == BULLET_DUPLICATE
    assert store.bullets[b.id].bullet_cluster_id == a.id
    assert store.bullets[c.id].status == BULLET_READY


@pytest.mark.asyncio
async def test_pending_matches_existing_canonical():
    store = InMemoryStore()
    ready = make_bullet("item-z", 0.5, A_VEC, status=BULLET_READY)
    ready.bullet_cluster_id = ready.id
    pending = make_bullet("item-y", 0.95, B_VEC)
    await store.insert_bullet(ready)
    await store.insert_bullet(pending)

    result = await run_bullet_dedup(store, threshold=0.92)
    assert result == {"duplicates": 1, "canonical": 0}
    assert store.bullets[pending.id].bullet_cluster_id == ready.id


@pytest.mark.asyncio
async def test_old_ready_bullets_leave_the_pool():
    store = InMemoryStore()
    old = make_bullet("item-z", 0.5, A_VEC, status=BULLET_READY, created_at=utcnow() - timedelta(hours=72))
    pending = make_bullet("item-y", 0.4, A_VEC)
    await store.insert_bullet(old)
    await store.insert_bullet(pending)

    result = await run_bullet_dedup(store, threshold=0.92, lookback_hours=48)
    assert result == {"duplicates": 0, "canonical": 1}
    assert store.bullets[pending.id].status == BULLET_READY


@pytest.mark.asyncio
async def test_pool_window_follows_given_now(sqlite_store, db_conn):
    old = make_bullet("item-z", 0.5, A_VEC, status=BULLET_READY, created_at=utcnow() - timedelta(hours=72))
    old.bullet_cluster_id = old.id
    pending = make_bullet("item-y", 0.4, A_VEC)
    await sqlite_store.insert_bullet(old)
    await sqlite_store.insert_bullet(pending)

    result = await run_bullet_dedup(
        sqlite_store, threshold=0.92, lookback_hours=48, now=utcnow() - timedelta(hours=48),
    )

    assert result == {"duplicates": 1, "canonical": 0}
    (stored,) = get_bullets_by_item(db_conn, "item-y")
    assert stored.status == BULLET_DUPLICATE
    assert stored.bullet_cluster_id == old.id


@pytest.mark.asyncio
async def test_pending_without_embedding_is_promoted():
    store = InMemoryStore()
    bare = make_bullet("item-x", 0.6, [])
    await store.insert_bullet(bare)
    assert await run_bullet_dedup(store) == {"duplicates": 0, "canonical": 1}
    assert store.bullets[bare.id].status == BULLET_READY


@pytest.mark.asyncio
async def test_nothing_pending_is_a_noop():
    store = InMemoryStore()
    await store.insert_bullet(make_bullet("item-x", 0.6, A_VEC, status=BULLET_READY))
    assert await run_bullet_dedup(store) == {"duplicates": 0, "canonical": 0}


@pytest.mark.asyncio
async def test_run_bullet_dedup_on_sqlite(sqlite_store, db_conn):
    a, b, c = _scenario_bullets()
    for bullet in (c, b, a):
        await sqlite_store.insert_bullet(bullet)

    await run_bullet_dedup(sqlite_store, threshold=0.92)

    x_bullets = {bl.id: bl for bl in get_bullets_by_item(db_conn, "item-x")}
    (y_bullet,) = get_bullets_by_item(db_conn, "item-y")
    assert x_bullets[a.id].status == BULLET_READY
    assert x_bullets[c.id].status == BULLET_READY
    assert y_bullet.status == BULLET_DUPLICATE
    assert y_bullet.bullet_cluster_id == a.id
    assert all(bl.status != BULLET_PENDING for bl in x_bullets.values())
