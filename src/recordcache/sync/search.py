"""Search over the cached collection, tolerant of stale pages."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from recordcache.logging import sync_operation
from recordcache.storage.models import CollectionItem, SearchPage
from recordcache.sync.transform import dedupe_items, matches_query, paginate

if TYPE_CHECKING:
    from recordcache.sync.engine import CollectionCache

log = structlog.get_logger(__name__)

_QUICK_SEARCH_LIMIT = 100


class CacheSearch:
    """Filters and paginates cached items without contacting Discogs.

    Stale pages are still searched; finding one only schedules a background
    refresh.
    """

    def __init__(self, cache: CollectionCache) -> None:
        self._cache = cache

    @sync_operation("search")
    async def search_from_cache(
        self,
        username: str,
        query: str,
        page: int = 1,
        per_page: int = 50,
    ) -> SearchPage:
        try:
            pages = await self._cache.load_cached_pages(username)
            if pages and not self._cache.is_cache_valid(pages[0]):
                job_id = self._cache.schedule_preload(username)
                log.info("search_triggered_refresh", username=username, job_id=job_id)

            items = dedupe_items(item for cached in pages for item in cached.data)
            filtered = [item for item in items if matches_query(item, query)]
            page_items, total_pages = paginate(filtered, page, per_page)

            log.info(
                "search_completed",
                username=username,
                query=query,
                cached_items=len(items),
                total=len(filtered),
                page=page,
            )
            return SearchPage(
                items=page_items,
                total=len(filtered),
                total_pages=total_pages,
                page=page,
                per_page=per_page,
            )
        except Exception as exc:
            log.error("search_failed", username=username, query=query, error=str(exc))
            return SearchPage(page=page, per_page=per_page)

    @sync_operation("search")
    async def search(self, username: str, query: str) -> list[CollectionItem]:
        """Quick search: cached hits first, else filter a freshly fetched first page."""
        result = await self.search_from_cache(username, query, 1, _QUICK_SEARCH_LIMIT)
        if result.total > 0:
            return result.items

        if await self._cache.load_cached_pages(username):
            return []

        log.info("search_no_cache_fallback", username=username)
        first = await self._cache.fetch_page(username, 1)
        if not first.success:
            return []
        return [item for item in first.data if matches_query(item, query)]
