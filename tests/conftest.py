"""Shared fixtures for recordcache tests."""

from __future__ import annotations

import math
from pathlib import Path

import pytest
import pytest_asyncio

from recordcache.config import AppConfig, CacheConfig
from recordcache.storage import BlobStore, Pagination
from recordcache.sync.discogs import DiscogsAPIError, DiscogsAuthError, RemotePage
from recordcache.sync.engine import CollectionCache
from recordcache.sync.transform import ms_to_iso

T0 = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all recordcache runtime files to a temporary directory.

    Patches ``recordcache.config.get_base_dir`` so that nothing touches the
    real ``~/.recordcache/``.
    """
    fake_base = tmp_path / ".recordcache"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("recordcache.config.get_base_dir", lambda: fake_base)

    return fake_base


# ---------------------------------------------------------------------------
# Cache engine fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Epoch-ms clock that only moves when a test says so."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def raw_entry(item_id: int, added_ms: int, *, artist: str = "Artist", title: str | None = None) -> dict:
    """Build a Discogs collection entry as returned by the API."""
    return {
        "id": item_id,
        "date_added": ms_to_iso(added_ms),
        "rating": 0,
        "basic_information": {
            "id": item_id,
            "title": title or f"Release {item_id}",
            "artists": [{"name": artist}],
        },
    }


class FakeCatalog:
    """In-memory Discogs stand-in that records every collection request.

    ``entries`` is served in list order for both sorted and unsorted
    requests; tests keep it newest first.
    """

    def __init__(self, entries: list[dict] | None = None) -> None:
        self.entries = list(entries or [])
        self.calls: list[dict] = []
        self.fail_pages: set[int] = set()
        self.reject_auth = False
        self.releases: dict[int, dict] = {}
        self.release_calls: list[int] = []

    @property
    def pages_requested(self) -> list[int]:
        return [call["page"] for call in self.calls]

    async def fetch_page(
        self,
        username,
        page,
        per_page,
        *,
        sort=None,
        sort_order=None,
        authenticated=True,
    ) -> RemotePage:
        self.calls.append(
            {
                "username": username,
                "page": page,
                "per_page": per_page,
                "sort": sort,
                "sort_order": sort_order,
                "authenticated": authenticated,
            }
        )
        if authenticated and self.reject_auth:
            raise DiscogsAuthError("token rejected")
        if page in self.fail_pages:
            raise DiscogsAPIError(f"Discogs API error: 500 page {page}")
        pages = max(math.ceil(len(self.entries) / per_page), 1)
        chunk = self.entries[(page - 1) * per_page : page * per_page]
        return RemotePage(
            releases=[dict(e) for e in chunk],
            pagination=Pagination(page=page, pages=pages, per_page=per_page, items=len(self.entries)),
        )

    async def get_release(self, release_id: int) -> dict:
        self.release_calls.append(release_id)
        if release_id not in self.releases:
            raise DiscogsAPIError("Discogs API error: 404 Release not found")
        return self.releases[release_id]


def make_config(**cache_kw) -> AppConfig:
    cache_kw.setdefault("request_delay_seconds", 0)
    return AppConfig(cache=CacheConfig(**cache_kw))


@pytest_asyncio.fixture()
async def store(tmp_path):
    blobs = BlobStore(tmp_path / "cache.db")
    await blobs.connect()
    yield blobs
    await blobs.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest_asyncio.fixture()
async def make_cache(store, catalog, clock):
    """Factory for a CollectionCache wired to the fakes; drains background work on teardown."""
    created: list[CollectionCache] = []

    def factory(**cache_kw) -> CollectionCache:
        cache = CollectionCache(make_config(**cache_kw), store, catalog, clock=clock)
        created.append(cache)
        return cache

    yield factory

    for cache in created:
        await cache.tasks.drain()
