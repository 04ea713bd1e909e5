"""Collection cache engine: page caching, full preload and incremental updates."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import structlog
from pydantic import ValidationError

from recordcache.logging import sync_operation
from recordcache.storage.models import (
    CacheClear,
    CacheUpdate,
    CollectionItem,
    CollectionPage,
    CollectionSnapshot,
    NewItemsCheck,
    PreloadProgress,
    ReleaseDetails,
)
from recordcache.sync.background import BackgroundTasks
from recordcache.sync.discogs import DiscogsAuthError
from recordcache.sync.locks import KeyedFlightGuard
from recordcache.sync.transform import (
    dedupe_items,
    is_cache_valid,
    ms_to_iso,
    parse_added_at,
    repaginate,
    transform_entry,
    transform_release,
)

if TYPE_CHECKING:
    from recordcache.config import AppConfig
    from recordcache.storage.blobs import BlobStore
    from recordcache.sync.discogs import RemotePage

log = structlog.get_logger(__name__)

_COLLECTIONS_DIR = "collections"

NO_CACHED_DATA = "No cached data found"
_PAGE_FILE_RE = re.compile(r"^(?P<username>.+)-page-(?P<page>\d+)\.json$")


def page_key(username: str, page: int) -> str:
    return f"{_COLLECTIONS_DIR}/{username}-page-{page}.json"


def progress_key(username: str) -> str:
    return f"{_COLLECTIONS_DIR}/{username}-progress.json"


def release_key(release_id: int) -> str:
    return f"{_COLLECTIONS_DIR}/release-{release_id}.json"


def _now_ms() -> int:
    return int(time.time() * 1000)


class CatalogClient(Protocol):
    """The subset of :class:`~recordcache.sync.discogs.DiscogsClient` the engine uses."""

    async def fetch_page(
        self,
        username: str,
        page: int,
        per_page: int,
        *,
        sort: str | None = None,
        sort_order: str | None = None,
        authenticated: bool = True,
    ) -> RemotePage: ...

    async def get_release(self, release_id: int) -> dict: ...


@dataclass
class _ScanResult:
    items: list[CollectionItem] = field(default_factory=list)
    pages_requested: int = 0
    ordering_violated: bool = False


class CollectionCache:
    """Keeps a paged local mirror of a user's Discogs collection.

    The engine is the only writer of page and progress blobs.  Every public
    coroutine converts failures into a result model instead of raising.
    """

    def __init__(
        self,
        config: AppConfig,
        store: BlobStore,
        client: CatalogClient,
        *,
        guard: KeyedFlightGuard | None = None,
        tasks: BackgroundTasks | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._config = config
        self._cache_cfg = config.cache
        self._store = store
        self._client = client
        self._guard = guard or KeyedFlightGuard()
        self._tasks = tasks or BackgroundTasks()
        self._clock = clock or _now_ms

    @property
    def guard(self) -> KeyedFlightGuard:
        return self._guard

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    def is_cache_valid(self, page: CollectionPage, now: int | None = None) -> bool:
        now = self._clock() if now is None else now
        return is_cache_valid(page.timestamp, now, self._cache_cfg.valid_ms)

    # ── PAGE FETCH ─────────────────────────────────────────────────────────

    async def fetch_page(
        self,
        username: str,
        page: int = 1,
        per_page: int | None = None,
        force_reload: bool = False,
    ) -> CollectionPage:
        """Return one collection page, from cache while it is fresh.

        Only pages of the configured page size are cached; any other
        *per_page* is a pass-through to the remote.
        """
        per_page = per_page or self._cache_cfg.page_size
        cacheable = per_page == self._cache_cfg.page_size
        key = page_key(username, page)
        try:
            if not cacheable:
                log.info("page_uncached_size", username=username, page=page, per_page=per_page)
            elif not force_reload:
                cached = await self._read_page(key)
                if cached is not None and self.is_cache_valid(cached):
                    log.debug("page_cache_hit", username=username, page=page)
                    return cached
                log.info(
                    "page_cache_stale" if cached is not None else "page_cache_miss",
                    username=username,
                    page=page,
                )
            else:
                log.info("page_force_reload", username=username, page=page)

            # Captured before the remote call so items added mid-fetch stay "new".
            fetch_started = self._clock()
            remote = await self._client.fetch_page(username, page, per_page)
            result = CollectionPage(
                success=True,
                data=[transform_entry(raw) for raw in remote.releases],
                pagination=remote.pagination,
                timestamp=fetch_started,
            )
            if cacheable:
                await self._store.write_json(key, result.model_dump(mode="json"))
                log.info("page_cached", username=username, page=page, items=len(result.data))
            return result
        except Exception as exc:
            log.error("page_fetch_failed", username=username, page=page, error=str(exc))
            return CollectionPage(success=False, error=str(exc))

    # ── FULL PRELOAD ───────────────────────────────────────────────────────

    @sync_operation("preload")
    async def preload_all(self, username: str, *, force: bool = False) -> PreloadProgress | None:
        """Warm every page of *username*'s collection.

        Returns ``None`` without doing anything when a preload for the same
        user is already in flight.
        """
        async with self._guard.flight(username) as acquired:
            if not acquired:
                return None
            return await self._preload(username, force=force)

    async def _preload(self, username: str, *, force: bool) -> PreloadProgress:
        progress: PreloadProgress | None = None
        try:
            existing = await self.get_progress(username)
            if not force and existing and existing.status == "completed" and existing.end_time:
                age = self._clock() - existing.end_time
                if age < self._cache_cfg.preload_fresh_ms:
                    log.info("preload_skipped_recent", username=username, age_minutes=age // 60000)
                    return existing

            log.info("preload_start", username=username, force=force)
            per_page = self._cache_cfg.page_size
            start = self._clock()

            first = await self.fetch_page(username, 1, per_page, force_reload=force)
            if not first.success or first.pagination is None:
                progress = PreloadProgress(
                    username=username,
                    start_time=start,
                    end_time=self._clock(),
                    status="failed",
                    error=first.error or "Failed to get first page",
                )
                await self._save_progress(progress)
                log.warning("preload_first_page_failed", username=username, error=progress.error)
                return progress

            total_pages = max(first.pagination.pages, 1)
            progress = PreloadProgress(
                username=username,
                total_pages=total_pages,
                current_page=1,
                completed_pages=[1],
                start_time=start,
                status="loading",
            )
            await self._save_progress(progress)

            for page in range(2, total_pages + 1):
                await self._throttle()
                result = await self.fetch_page(username, page, per_page, force_reload=force)
                if result.success:
                    progress.current_page = page
                    progress.completed_pages.append(page)
                    await self._save_progress(progress)
                    log.info("preload_page_cached", username=username, page=page, total_pages=total_pages)
                else:
                    progress.failed_pages.append(page)
                    log.warning("preload_page_failed", username=username, page=page, error=result.error)

            removed = await self._remove_orphan_pages(username, total_pages)
            progress.status = "completed"
            progress.current_page = total_pages
            progress.end_time = self._clock()
            await self._save_progress(progress, backup=True)
            log.info(
                "preload_completed",
                username=username,
                total_pages=total_pages,
                failed_pages=progress.failed_pages,
                removed_pages=removed,
            )
            return progress

        except Exception as exc:
            log.error("preload_failed", username=username, error=str(exc))
            failed = progress or PreloadProgress(username=username)
            failed.status = "failed"
            failed.error = str(exc)
            failed.end_time = self._clock()
            try:
                await self._save_progress(failed)
            except Exception as save_exc:
                log.error("progress_save_failed", username=username, error=str(save_exc))
            return failed

    # ── NEW-ITEM DETECTION ─────────────────────────────────────────────────

    @sync_operation("check")
    async def check_for_new_items(self, username: str) -> NewItemsCheck:
        """Count remote items added after the cache of *username* was fetched."""
        try:
            cached = await self._read_page(page_key(username, 1))
            if cached is None or not cached.timestamp:
                log.info("check_no_cache", username=username)
                return NewItemsCheck(success=False, error=NO_CACHED_DATA)

            cutoff = cached.timestamp
            cutoff_iso = ms_to_iso(cutoff)

            authenticated = True
            try:
                probe = await self._fetch_newest(username, 1, authenticated=True)
            except Exception as exc:
                log.warning("check_authenticated_probe_failed", username=username, error=str(exc))
                authenticated = False
                probe = await self._fetch_newest(username, 1, authenticated=False)

            if not probe.releases:
                return NewItemsCheck(
                    success=False,
                    latest_cache_date=cutoff_iso,
                    error="Failed to get fresh collection data",
                )

            latest_remote = probe.releases[0].get("date_added")
            latest_ms = parse_added_at(latest_remote)
            if latest_ms is None:
                return NewItemsCheck(
                    success=False,
                    latest_cache_date=cutoff_iso,
                    error="No date information found",
                )

            if latest_ms <= cutoff:
                log.info("check_up_to_date", username=username)
                return NewItemsCheck(
                    success=True,
                    latest_cache_date=cutoff_iso,
                    latest_remote_date=latest_remote,
                )

            scan = await self._scan_new_items(
                username, cutoff, authenticated=authenticated, throttle_first=True
            )
            log.info(
                "check_found_new_items",
                username=username,
                count=len(scan.items),
                pages=scan.pages_requested,
            )
            return NewItemsCheck(
                success=True,
                new_items_count=len(scan.items),
                latest_cache_date=cutoff_iso,
                latest_remote_date=latest_remote,
                ordering_violated=scan.ordering_violated,
            )
        except Exception as exc:
            log.error("check_failed", username=username, error=str(exc))
            return NewItemsCheck(success=False, error=str(exc))

    # ── INCREMENTAL UPDATE ─────────────────────────────────────────────────

    @sync_operation("update")
    async def update_cache_with_new_items(self, username: str) -> CacheUpdate:
        """Merge remotely added items into the cached pages without a full preload."""
        try:
            cached = await self._read_page(page_key(username, 1))
            if cached is None or not cached.timestamp:
                log.info("update_no_cache", username=username)
                return CacheUpdate(success=False, error="No existing cache found")

            cutoff = cached.timestamp
            update_started = self._clock()

            try:
                scan = await self._scan_new_items(username, cutoff)
            except DiscogsAuthError as exc:
                log.warning("update_authenticated_scan_failed", username=username, error=str(exc))
                scan = await self._scan_new_items(username, cutoff, authenticated=False)

            if scan.ordering_violated:
                job_id = self.schedule_preload(username, force=True)
                log.warning("update_ordering_violated", username=username, job_id=job_id)
                return CacheUpdate(
                    success=False,
                    error="Remote ordering violated; full refresh scheduled",
                )

            if not scan.items:
                log.info("update_nothing_new", username=username)
                return CacheUpdate(success=True)

            page_size = self._cache_cfg.page_size
            cached_pages = await self.load_cached_pages(username)
            mismatched = [
                page.pagination.page if page.pagination else None
                for page in cached_pages
                if page.pagination is None or page.pagination.per_page != page_size
            ]
            if mismatched:
                job_id = self.schedule_preload(username, force=True)
                log.warning(
                    "update_page_size_mismatch",
                    username=username,
                    pages=mismatched,
                    job_id=job_id,
                )
                return CacheUpdate(
                    success=False,
                    error="Cached pages use a different page size; full refresh scheduled",
                )

            existing = dedupe_items([item for page in cached_pages for item in page.data])
            merged = dedupe_items([*scan.items, *existing])
            added = len(merged) - len(existing)
            pages = repaginate(merged, page_size)

            for page_items, pagination in pages:
                page = CollectionPage(
                    success=True,
                    data=page_items,
                    pagination=pagination,
                    timestamp=update_started,
                )
                await self._store.write_json(
                    page_key(username, pagination.page), page.model_dump(mode="json")
                )

            removed = await self._remove_orphan_pages(username, len(pages))
            log.info(
                "update_completed",
                username=username,
                new_items=added,
                total_items=len(merged),
                pages=len(pages),
                removed_pages=removed,
            )
            return CacheUpdate(
                success=True,
                new_items_added=added,
                pages_written=len(pages),
                pages_removed=removed,
            )
        except Exception as exc:
            log.error("update_failed", username=username, error=str(exc))
            return CacheUpdate(success=False, error=str(exc))

    # ── READS / MAINTENANCE ────────────────────────────────────────────────

    async def get_progress(self, username: str) -> PreloadProgress | None:
        try:
            raw = await self._store.read_json(progress_key(username))
            return PreloadProgress.model_validate(raw) if raw else None
        except Exception as exc:
            log.warning("progress_read_failed", username=username, error=str(exc))
            return None

    async def load_cached_pages(self, username: str) -> list[CollectionPage]:
        """Read cached pages 1, 2, ... until the first missing one."""
        pages: list[CollectionPage] = []
        number = 1
        while True:
            cached = await self._read_page(page_key(username, number))
            if cached is None:
                break
            pages.append(cached)
            number += 1
        return pages

    async def get_all(self, username: str, *, include_stale: bool = False) -> CollectionSnapshot:
        """Concatenate the cached pages of *username*, dropping duplicate ids.

        Without *include_stale* reading stops at the first stale page.
        """
        try:
            now = self._clock()
            items: list[CollectionItem] = []
            stale = False
            for page in await self.load_cached_pages(username):
                if not self.is_cache_valid(page, now):
                    stale = True
                    if not include_stale:
                        break
                items.extend(page.data)
            data = dedupe_items(items)
            return CollectionSnapshot(data=data, total=len(data), stale=stale, timestamp=now)
        except Exception as exc:
            log.error("get_all_failed", username=username, error=str(exc))
            return CollectionSnapshot(success=False, error=str(exc))

    async def clear_cache(self, username: str | None = None) -> CacheClear:
        """Delete cached page blobs; progress, release and backup blobs stay."""
        try:
            deleted = 0
            for name in await self._store.list_files(_COLLECTIONS_DIR):
                match = _PAGE_FILE_RE.match(name)
                if not match:
                    continue
                if username is not None and match["username"] != username:
                    continue
                if await self._store.delete(f"{_COLLECTIONS_DIR}/{name}"):
                    deleted += 1
            log.info("cache_cleared", username=username, deleted=deleted)
            return CacheClear(success=True, deleted=deleted)
        except Exception as exc:
            log.error("cache_clear_failed", username=username, error=str(exc))
            return CacheClear(success=False, error=str(exc))

    async def get_release_details(self, release_id: int) -> ReleaseDetails | None:
        """Return a release with its tracklist; cached indefinitely once fetched."""
        key = release_key(release_id)
        try:
            raw = await self._store.read_json(key)
            if raw:
                return ReleaseDetails.model_validate(raw)
            release = transform_release(await self._client.get_release(release_id))
            await self._store.write_json(key, release.model_dump(mode="json"))
            return release
        except Exception as exc:
            log.error("release_fetch_failed", release_id=release_id, error=str(exc))
            return None

    # ── BACKGROUND ─────────────────────────────────────────────────────────

    def schedule_preload(self, username: str, *, force: bool = False) -> str:
        return self._tasks.submit(
            "collection_preload",
            f"Preloading collection for {username}",
            self.preload_all(username, force=force),
        )

    def schedule_update(self, username: str) -> str:
        return self._tasks.submit(
            "collection_update",
            f"Adding new items to {username}'s cached collection",
            self.update_cache_with_new_items(username),
        )

    # ── HELPERS ────────────────────────────────────────────────────────────

    async def _throttle(self) -> None:
        delay = self._cache_cfg.request_delay_seconds
        if delay > 0:
            await asyncio.sleep(delay)

    async def _read_page(self, key: str) -> CollectionPage | None:
        raw = await self._store.read_json(key)
        if raw is None:
            return None
        try:
            return CollectionPage.model_validate(raw)
        except ValidationError as exc:
            log.warning("page_decode_failed", key=key, error=str(exc))
            return None

    async def _save_progress(self, progress: PreloadProgress, *, backup: bool = False) -> None:
        key = progress_key(progress.username)
        value = progress.model_dump(mode="json")
        if backup:
            await self._store.write_json_with_backup(key, value)
        else:
            await self._store.write_json(key, value)

    async def _fetch_newest(self, username: str, page: int, *, authenticated: bool) -> RemotePage:
        return await self._client.fetch_page(
            username,
            page,
            self._cache_cfg.page_size,
            sort="added",
            sort_order="desc",
            authenticated=authenticated,
        )

    async def _scan_new_items(
        self,
        username: str,
        cutoff: int,
        *,
        authenticated: bool = True,
        throttle_first: bool = False,
    ) -> _ScanResult:
        """Walk newest-first pages collecting items added after *cutoff*.

        Stops at the first item at or before the cutoff, the last remote page,
        or the scan page limit.  If the remote order turns out not to be
        descending the early exit is abandoned for the rest of the window.
        """
        result = _ScanResult()
        previous: int | None = None
        page = 1

        while page <= self._cache_cfg.scan_page_limit:
            if page > 1 or throttle_first:
                await self._throttle()
            remote = await self._fetch_newest(username, page, authenticated=authenticated)
            result.pages_requested += 1
            if not remote.releases:
                break

            reached_older = False
            for raw in remote.releases:
                added = parse_added_at(raw.get("date_added"))
                if previous is not None and added is not None and added > previous:
                    if not result.ordering_violated:
                        log.warning(
                            "remote_ordering_violated",
                            username=username,
                            page=page,
                            item_id=raw.get("id"),
                        )
                    result.ordering_violated = True
                if added is not None:
                    previous = added

                if added is not None and added > cutoff:
                    result.items.append(transform_entry(raw))
                else:
                    reached_older = True
                    if not result.ordering_violated:
                        break

            if reached_older and not result.ordering_violated:
                log.debug("scan_reached_cached_items", username=username, page=page)
                break
            last_page = remote.pagination.pages if remote.pagination else page
            if page >= last_page:
                break
            page += 1

        return result

    async def _remove_orphan_pages(self, username: str, last_page: int) -> int:
        removed = 0
        for page in range(last_page + 1, last_page + self._cache_cfg.orphan_probe_pages + 1):
            key = page_key(username, page)
            if not await self._store.exists(key):
                break
            await self._store.delete(key)
            removed += 1
        return removed
