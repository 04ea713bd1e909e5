"""Tests for CollectionCache: page caching, preload and incremental updates."""

from __future__ import annotations

import asyncio

import pytest

from conftest import DAY_MS, T0, raw_entry
from recordcache.storage.models import CollectionItem, CollectionPage, Pagination, Release
from recordcache.sync.engine import NO_CACHED_DATA, CollectionCache, page_key, progress_key

HOUR_MS = 60 * 60 * 1000

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _old_entries(count: int, start_id: int = 1) -> list[dict]:
    """Entries added before T0, newest first."""
    return [raw_entry(start_id + i, T0 - (i + 1) * 1000) for i in range(count)]


def _new_entries(count: int, start_id: int = 1000) -> list[dict]:
    """Entries added after T0, newest first."""
    return [raw_entry(start_id + i, T0 + (count - i) * 1000) for i in range(count)]


async def _seed_page(
    store,
    username: str,
    page: int,
    ids: list[int],
    timestamp: int = T0,
    pages: int = 1,
    per_page: int = 50,
):
    data = [
        CollectionItem(id=i, date_added="2020-01-01T00:00:00+00:00", release=Release(id=i))
        for i in ids
    ]
    cached = CollectionPage(
        data=data,
        pagination=Pagination(page=page, pages=pages, per_page=per_page, items=len(ids)),
        timestamp=timestamp,
    )
    await store.write_json(page_key(username, page), cached.model_dump(mode="json"))


async def _cached_ids(cache: CollectionCache, username: str) -> list[int]:
    return [item.id for page in await cache.load_cached_pages(username) for item in page.data]


# ---------------------------------------------------------------------------
# fetch_page
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_page_miss_then_hit(make_cache, catalog, store, clock):
    catalog.entries = _old_entries(3)
    cache = make_cache()

    first = await cache.fetch_page("alice", 1)
    assert first.success
    assert [item.id for item in first.data] == [1, 2, 3]
    assert first.timestamp == T0
    assert await store.exists(page_key("alice", 1))

    clock.advance(HOUR_MS)
    second = await cache.fetch_page("alice", 1)
    assert second.timestamp == T0
    assert len(catalog.calls) == 1


@pytest.mark.asyncio
async def test_fetch_page_staleness_boundary(make_cache, catalog, clock):
    catalog.entries = _old_entries(2)
    cache = make_cache()
    await cache.fetch_page("alice", 1)

    clock.now = T0 + DAY_MS - 1
    await cache.fetch_page("alice", 1)
    assert len(catalog.calls) == 1

    clock.now = T0 + DAY_MS
    refreshed = await cache.fetch_page("alice", 1)
    assert len(catalog.calls) == 2
    assert refreshed.timestamp == T0 + DAY_MS


@pytest.mark.asyncio
async def test_fetch_page_force_reload(make_cache, catalog):
    catalog.entries = _old_entries(2)
    cache = make_cache()
    await cache.fetch_page("alice", 1)
    await cache.fetch_page("alice", 1, force_reload=True)
    assert len(catalog.calls) == 2


@pytest.mark.asyncio
async def test_fetch_page_uses_default_page_size(make_cache, catalog):
    cache = make_cache(page_size=25)
    await cache.fetch_page("alice", 1)
    assert catalog.calls[0]["per_page"] == 25


@pytest.mark.asyncio
async def test_fetch_page_other_size_bypasses_cache(make_cache, catalog, store):
    catalog.entries = _old_entries(30)
    cache = make_cache(page_size=10)
    await cache.fetch_page("alice", 1)

    wide = await cache.fetch_page("alice", 1, per_page=25)
    assert len(wide.data) == 25
    assert catalog.calls[-1]["per_page"] == 25

    again = await cache.fetch_page("alice", 1, per_page=25)
    assert len(again.data) == 25
    assert len(catalog.calls) == 3

    cached = await cache.fetch_page("alice", 1)
    assert len(cached.data) == 10
    assert len(catalog.calls) == 3


@pytest.mark.asyncio
async def test_forced_reload_at_other_size_keeps_cached_pages(make_cache, catalog, clock):
    catalog.entries = _old_entries(120)
    cache = make_cache()
    await cache.preload_all("alice")

    narrow = await cache.fetch_page("alice", 1, per_page=10, force_reload=True)
    assert narrow.success
    assert len(narrow.data) == 10
    assert [len(page.data) for page in await cache.load_cached_pages("alice")] == [50, 50, 20]

    catalog.entries = _new_entries(1) + catalog.entries
    clock.advance(HOUR_MS)
    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.new_items_added == 1
    assert (await cache.get_all("alice")).total == 121


@pytest.mark.asyncio
async def test_fetch_page_timestamp_is_fetch_start(make_cache, catalog, clock):
    catalog.entries = _old_entries(1)
    original = catalog.fetch_page

    async def slow_fetch(*args, **kwargs):
        clock.advance(5000)
        return await original(*args, **kwargs)

    catalog.fetch_page = slow_fetch
    cache = make_cache()
    result = await cache.fetch_page("alice", 1)
    assert result.timestamp == T0


@pytest.mark.asyncio
async def test_fetch_page_failure_not_cached(make_cache, catalog, store):
    catalog.fail_pages = {1}
    cache = make_cache()

    result = await cache.fetch_page("alice", 1)
    assert result.success is False
    assert "500" in result.error
    assert await store.exists(page_key("alice", 1)) is False


@pytest.mark.asyncio
async def test_is_cache_valid(make_cache, clock):
    cache = make_cache()
    page = CollectionPage(timestamp=T0)
    assert cache.is_cache_valid(page, T0 + DAY_MS - 1) is True
    assert cache.is_cache_valid(page, T0 + DAY_MS) is False
    clock.now = T0 + 1
    assert cache.is_cache_valid(page) is True


# ---------------------------------------------------------------------------
# preload_all
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_preload_caches_every_page(make_cache, catalog, store):
    catalog.entries = _old_entries(120)
    cache = make_cache()

    progress = await cache.preload_all("alice")

    assert progress.status == "completed"
    assert progress.total_pages == 3
    assert progress.completed_pages == [1, 2, 3]
    assert progress.failed_pages == []
    assert catalog.pages_requested == [1, 2, 3]
    assert len(await _cached_ids(cache, "alice")) == 120

    stored = await cache.get_progress("alice")
    assert stored.status == "completed"
    backup = await store.read_json(progress_key("alice") + ".bak")
    assert backup["status"] == "loading"


@pytest.mark.asyncio
async def test_preload_skips_when_recently_completed(make_cache, catalog, clock):
    catalog.entries = _old_entries(10)
    cache = make_cache()
    first = await cache.preload_all("alice")

    clock.advance(11 * HOUR_MS)
    again = await cache.preload_all("alice")
    assert again.end_time == first.end_time
    assert len(catalog.calls) == 1

    forced = await cache.preload_all("alice", force=True)
    assert forced.end_time == clock.now
    assert len(catalog.calls) == 2


@pytest.mark.asyncio
async def test_preload_reruns_after_fresh_window(make_cache, catalog, clock):
    catalog.entries = _old_entries(10)
    cache = make_cache()
    await cache.preload_all("alice")

    clock.advance(25 * HOUR_MS)
    result = await cache.preload_all("alice")
    assert result.end_time == clock.now
    assert len(catalog.calls) == 2


@pytest.mark.asyncio
async def test_preload_returns_none_while_in_flight(make_cache, catalog):
    cache = make_cache()
    cache.guard.try_acquire("alice")

    assert await cache.preload_all("alice") is None
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_concurrent_preloads_single_flight(make_cache, catalog):
    catalog.entries = _old_entries(5)
    gate = asyncio.Event()
    original = catalog.fetch_page

    async def gated_fetch(*args, **kwargs):
        await gate.wait()
        return await original(*args, **kwargs)

    catalog.fetch_page = gated_fetch
    cache = make_cache()

    first = asyncio.create_task(cache.preload_all("alice"))
    while not cache.guard.is_held("alice"):
        await asyncio.sleep(0)

    assert await cache.preload_all("alice") is None
    other_user = asyncio.create_task(cache.preload_all("bob"))

    gate.set()
    assert (await first).status == "completed"
    assert (await other_user).status == "completed"
    assert cache.guard.held() == []


@pytest.mark.asyncio
async def test_preload_first_page_failure_releases_guard(make_cache, catalog):
    catalog.entries = _old_entries(5)
    catalog.fail_pages = {1}
    cache = make_cache()

    failed = await cache.preload_all("alice")
    assert failed.status == "failed"
    assert failed.error
    assert cache.guard.is_held("alice") is False

    catalog.fail_pages = set()
    retried = await cache.preload_all("alice")
    assert retried.status == "completed"


@pytest.mark.asyncio
async def test_preload_records_failed_pages(make_cache, catalog):
    catalog.entries = _old_entries(150)
    catalog.fail_pages = {2}
    cache = make_cache()

    progress = await cache.preload_all("alice")
    assert progress.status == "completed"
    assert progress.completed_pages == [1, 3]
    assert progress.failed_pages == [2]


@pytest.mark.asyncio
async def test_preload_unexpected_error_marks_failed(make_cache, catalog):
    async def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    cache = make_cache()
    cache.fetch_page = explode

    progress = await cache.preload_all("alice")
    assert progress.status == "failed"
    assert progress.error == "disk full"
    assert cache.guard.is_held("alice") is False


@pytest.mark.asyncio
async def test_preload_empty_collection(make_cache, catalog):
    cache = make_cache()
    progress = await cache.preload_all("alice")
    assert progress.status == "completed"
    assert progress.total_pages == 1


# ---------------------------------------------------------------------------
# check_for_new_items
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_check_without_cache(make_cache, catalog):
    cache = make_cache()
    result = await cache.check_for_new_items("alice")
    assert result.success is False
    assert result.error == NO_CACHED_DATA
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_check_up_to_date_uses_single_probe(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1, 2])
    catalog.entries = _old_entries(20)
    cache = make_cache(page_size=5)

    result = await cache.check_for_new_items("alice")
    assert result.success
    assert result.new_items_count == 0
    assert len(catalog.calls) == 1
    assert catalog.calls[0]["sort"] == "added"
    assert catalog.calls[0]["sort_order"] == "desc"


@pytest.mark.asyncio
async def test_check_exits_early_at_cached_items(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(7) + _old_entries(8)
    cache = make_cache(page_size=5)

    result = await cache.check_for_new_items("alice")
    assert result.success
    assert result.new_items_count == 7
    assert result.ordering_violated is False
    assert catalog.pages_requested == [1, 1, 2]
    assert 3 not in catalog.pages_requested


@pytest.mark.asyncio
async def test_check_all_new_stops_at_last_remote_page(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(15)
    cache = make_cache(page_size=5)

    result = await cache.check_for_new_items("alice")
    assert result.new_items_count == 15
    assert len(catalog.calls) == 4


@pytest.mark.asyncio
async def test_check_respects_scan_page_limit(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(30)
    cache = make_cache(page_size=5, scan_page_limit=2)

    result = await cache.check_for_new_items("alice")
    assert result.new_items_count == 10
    assert catalog.pages_requested == [1, 1, 2]


@pytest.mark.asyncio
async def test_check_detects_ordering_violation(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = [
        raw_entry(501, T0 + 3000),
        raw_entry(502, T0 + 1000),
        raw_entry(503, T0 + 2000),
        *_old_entries(3),
    ]
    cache = make_cache()

    result = await cache.check_for_new_items("alice")
    assert result.success
    assert result.ordering_violated is True
    assert result.new_items_count == 3


@pytest.mark.asyncio
async def test_check_falls_back_to_anonymous(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(2) + _old_entries(2)
    catalog.reject_auth = True
    cache = make_cache()

    result = await cache.check_for_new_items("alice")
    assert result.success
    assert result.new_items_count == 2
    assert catalog.calls[0]["authenticated"] is True
    assert all(call["authenticated"] is False for call in catalog.calls[1:])


@pytest.mark.asyncio
async def test_check_empty_remote(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    cache = make_cache()

    result = await cache.check_for_new_items("alice")
    assert result.success is False
    assert result.error == "Failed to get fresh collection data"


@pytest.mark.asyncio
async def test_check_remote_without_dates(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    entry = raw_entry(9, T0)
    entry["date_added"] = ""
    catalog.entries = [entry]
    cache = make_cache()

    result = await cache.check_for_new_items("alice")
    assert result.success is False
    assert result.error == "No date information found"


# ---------------------------------------------------------------------------
# update_cache_with_new_items
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_without_cache(make_cache):
    cache = make_cache()
    result = await cache.update_cache_with_new_items("alice")
    assert result.success is False
    assert result.error == "No existing cache found"


@pytest.mark.asyncio
async def test_update_merges_new_items_first(make_cache, catalog, clock):
    catalog.entries = _old_entries(60)
    cache = make_cache()
    await cache.preload_all("alice")

    catalog.entries = _new_entries(3) + catalog.entries
    clock.advance(HOUR_MS)
    calls_before = len(catalog.calls)

    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.new_items_added == 3
    assert result.pages_written == 2
    assert len(catalog.calls) - calls_before == 1

    pages = await cache.load_cached_pages("alice")
    ids = [item.id for page in pages for item in page.data]
    assert ids[:3] == [1000, 1001, 1002]
    assert len(ids) == 63
    assert [len(p.data) for p in pages] == [50, 13]
    assert all(p.timestamp == clock.now for p in pages)
    assert all(p.pagination.items == 63 and p.pagination.pages == 2 for p in pages)


@pytest.mark.asyncio
async def test_update_dedupes_existing_id(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [42, 7])
    catalog.entries = [raw_entry(42, T0 + 5000, title="Re-added"), raw_entry(7, T0 - 1000)]
    cache = make_cache()

    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.new_items_added == 0
    ids = await _cached_ids(cache, "alice")
    assert ids == [42, 7]
    first = (await cache.load_cached_pages("alice"))[0].data[0]
    assert first.release.title == "Re-added"


@pytest.mark.asyncio
async def test_update_is_idempotent(make_cache, catalog, clock):
    catalog.entries = _old_entries(8)
    cache = make_cache(page_size=5)
    await cache.preload_all("alice")

    catalog.entries = _new_entries(2) + catalog.entries
    clock.advance(HOUR_MS)
    first = await cache.update_cache_with_new_items("alice")
    snapshot = await _cached_ids(cache, "alice")

    clock.advance(HOUR_MS)
    second = await cache.update_cache_with_new_items("alice")

    assert first.new_items_added == 2
    assert second.success
    assert second.new_items_added == 0
    assert await _cached_ids(cache, "alice") == snapshot
    assert (await cache.check_for_new_items("alice")).new_items_count == 0


@pytest.mark.asyncio
async def test_update_removes_orphan_pages(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1, 2, 3, 4, 5], pages=4, per_page=5)
    await _seed_page(store, "alice", 2, [6, 7, 8, 9, 10], pages=4, per_page=5)
    await _seed_page(store, "alice", 3, [1, 2, 3, 4, 5], pages=4, per_page=5)
    await _seed_page(store, "alice", 4, [6, 7, 8, 9, 10], pages=4, per_page=5)
    catalog.entries = [raw_entry(100, T0 + 1000)] + _old_entries(10)
    cache = make_cache(page_size=5)

    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.pages_written == 3
    assert result.pages_removed == 1
    assert await store.exists(page_key("alice", 4)) is False
    assert await _cached_ids(cache, "alice") == [100, *range(1, 11)]


@pytest.mark.asyncio
async def test_update_nothing_new(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1, 2])
    catalog.entries = _old_entries(2)
    cache = make_cache()

    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.new_items_added == 0
    assert result.pages_written == 0


@pytest.mark.asyncio
async def test_update_ordering_violation_schedules_full_refresh(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = [raw_entry(501, T0 + 1000), raw_entry(502, T0 + 2000), *_old_entries(2)]
    cache = make_cache()

    result = await cache.update_cache_with_new_items("alice")
    assert result.success is False
    assert "ordering" in result.error.lower()
    assert await _cached_ids(cache, "alice") == [1]

    jobs = cache.tasks.tracker.recent_jobs()
    assert [job.type for job in jobs] == ["collection_preload"]
    await cache.tasks.drain()
    assert (await cache.get_progress("alice")).status == "completed"


@pytest.mark.asyncio
async def test_update_refuses_pages_of_another_size(make_cache, catalog, store, clock):
    catalog.entries = _old_entries(30)
    await make_cache(page_size=10).preload_all("alice")

    catalog.entries = _new_entries(1) + catalog.entries
    clock.advance(HOUR_MS)
    cache = make_cache()
    result = await cache.update_cache_with_new_items("alice")

    assert result.success is False
    assert "page size" in result.error
    assert [len(page.data) for page in await cache.load_cached_pages("alice")] == [10, 10, 10]
    assert [job.type for job in cache.tasks.tracker.recent_jobs()] == ["collection_preload"]

    await cache.tasks.drain()
    pages = await cache.load_cached_pages("alice")
    assert [page.pagination.per_page for page in pages] == [50]
    assert (await cache.get_all("alice")).total == 31
    assert await store.exists(page_key("alice", 2)) is False


@pytest.mark.asyncio
async def test_update_auth_failure_retries_anonymously(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(1) + _old_entries(1)
    catalog.reject_auth = True
    cache = make_cache()

    result = await cache.update_cache_with_new_items("alice")
    assert result.success
    assert result.new_items_added == 1
    assert catalog.calls[-1]["authenticated"] is False


# ---------------------------------------------------------------------------
# Reads / maintenance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_progress_missing(make_cache):
    assert await make_cache().get_progress("nobody") is None


@pytest.mark.asyncio
async def test_load_cached_pages_stops_at_gap(make_cache, store):
    await _seed_page(store, "alice", 1, [1])
    await _seed_page(store, "alice", 3, [3])
    pages = await make_cache().load_cached_pages("alice")
    assert len(pages) == 1


@pytest.mark.asyncio
async def test_get_all_stale_handling(make_cache, store, clock):
    await _seed_page(store, "alice", 1, [1, 2], timestamp=T0)
    await _seed_page(store, "alice", 2, [2, 3], timestamp=T0 - DAY_MS)
    cache = make_cache()

    fresh_only = await cache.get_all("alice")
    assert [i.id for i in fresh_only.data] == [1, 2]
    assert fresh_only.stale is True

    everything = await cache.get_all("alice", include_stale=True)
    assert [i.id for i in everything.data] == [1, 2, 3]
    assert everything.total == 3


@pytest.mark.asyncio
async def test_clear_cache_for_user_keeps_progress(make_cache, catalog, store):
    catalog.entries = _old_entries(120)
    cache = make_cache()
    await cache.preload_all("alice")
    await _seed_page(store, "bob", 1, [9])

    result = await cache.clear_cache("alice")
    assert result.success
    assert result.deleted == 3
    assert await cache.load_cached_pages("alice") == []
    assert await cache.get_progress("alice") is not None
    assert await store.exists(progress_key("alice") + ".bak")
    assert await store.exists(page_key("bob", 1))


@pytest.mark.asyncio
async def test_clear_cache_all_users(make_cache, store):
    await _seed_page(store, "alice", 1, [1])
    await _seed_page(store, "bob", 1, [2])
    await _seed_page(store, "bob", 2, [3])

    result = await make_cache().clear_cache()
    assert result.deleted == 3
    assert await store.list_files("collections") == []


@pytest.mark.asyncio
async def test_release_details_cached(make_cache, catalog):
    catalog.releases[77] = {
        "id": 77,
        "title": "Selected Ambient Works",
        "artists": [{"name": "Aphex Twin"}],
        "tracklist": [{"position": "1", "title": "Xtal", "duration": "4:54"}],
    }
    cache = make_cache()

    first = await cache.get_release_details(77)
    second = await cache.get_release_details(77)
    assert first.title == "Selected Ambient Works"
    assert second.tracklist[0].title == "Xtal"
    assert catalog.release_calls == [77]


@pytest.mark.asyncio
async def test_release_details_not_found(make_cache):
    assert await make_cache().get_release_details(404) is None


@pytest.mark.asyncio
async def test_schedule_update_runs_in_background(make_cache, catalog, store):
    await _seed_page(store, "alice", 1, [1])
    catalog.entries = _new_entries(1) + _old_entries(1)
    cache = make_cache()

    job_id = cache.schedule_update("alice")
    await cache.tasks.drain()

    job = cache.tasks.tracker.get_job(job_id)
    assert job.status == "completed"
    assert await _cached_ids(cache, "alice") == [1000, 1]

