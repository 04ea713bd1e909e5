"""HTTP API exposing the collection cache."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

if TYPE_CHECKING:
    from recordcache.sync.engine import CollectionCache
    from recordcache.sync.scheduler import RefreshScheduler
    from recordcache.sync.search import CacheSearch

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Uniform envelope returned by every endpoint."""

    success: bool = True
    data: Any = None
    error: str | None = None
    pagination: dict | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    body = ApiResponse(success=False, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class AppState:
    """Holds the services shared by the request handlers."""

    def __init__(
        self,
        cache: CollectionCache,
        search: CacheSearch,
        scheduler: RefreshScheduler | None = None,
    ) -> None:
        self.started_at: datetime = datetime.now(timezone.utc)
        self.shutdown_event: asyncio.Event = asyncio.Event()
        self.cache = cache
        self.search = search
        self.scheduler = scheduler

    def get_status(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        status: dict = {
            "uptime_seconds": round(uptime, 2),
            "started_at": self.started_at.isoformat(),
            "preloads_in_flight": self.cache.guard.held(),
            "background_tasks": self.cache.tasks.pending(),
        }
        if self.scheduler:
            status["scheduler"] = self.scheduler.get_status()
        return status

    def request_shutdown(self) -> None:
        log.info("shutdown_requested")
        self.shutdown_event.set()


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_api_app(state: AppState) -> FastAPI:  # noqa: C901
    """Build the FastAPI application serving the collection endpoints."""
    app = FastAPI(title="recordcache", docs_url=None, redoc_url=None)
    cache = state.cache

    @app.get("/health", response_model=ApiResponse)
    async def health() -> ApiResponse:
        return ApiResponse(data=state.get_status())

    @app.get("/jobs", response_model=ApiResponse)
    async def jobs() -> ApiResponse:
        return ApiResponse(data=[job.to_dict() for job in cache.tasks.tracker.recent_jobs()])

    @app.get("/collection/release/{release_id}", response_model=ApiResponse)
    async def release_details(release_id: str):
        try:
            rid = int(release_id)
        except ValueError:
            return _error(400, "Invalid release ID")
        release = await cache.get_release_details(rid)
        if release is None:
            return _error(404, "Release not found")
        return ApiResponse(data=release.model_dump(mode="json"))

    @app.delete("/collection/cache", response_model=ApiResponse)
    async def clear_all_cache() -> ApiResponse:
        result = await cache.clear_cache()
        return ApiResponse(
            success=result.success,
            data={"message": "Collection cache cleared", "deleted": result.deleted},
            error=result.error,
        )

    @app.get("/collection/{username}", response_model=ApiResponse)
    async def get_page(
        username: str,
        page: int = 1,
        per_page: int | None = None,
        force_reload: bool = False,
    ) -> ApiResponse:
        result = await cache.fetch_page(username, page, per_page, force_reload)
        return ApiResponse(
            success=result.success,
            data=[item.model_dump(mode="json") for item in result.data] if result.success else None,
            error=result.error,
            pagination=result.pagination.model_dump() if result.pagination else None,
        )

    @app.get("/collection/{username}/all", response_model=ApiResponse)
    async def get_all(username: str, include_stale: bool = False) -> ApiResponse:
        snapshot = await cache.get_all(username, include_stale=include_stale)
        return ApiResponse(
            success=snapshot.success,
            data=snapshot.model_dump(mode="json", exclude={"success", "error"}),
            error=snapshot.error,
        )

    @app.get("/collection/{username}/search", response_model=ApiResponse)
    async def search(username: str, q: str | None = None):
        if not q:
            return _error(400, "Search query is required")
        items = await state.search.search(username, q)
        return ApiResponse(data=[item.model_dump(mode="json") for item in items])

    @app.get("/collection/{username}/search-paginated", response_model=ApiResponse)
    async def search_paginated(username: str, q: str | None = None, page: int = 1, per_page: int = 50):
        if not q:
            return _error(400, "Search query is required")
        result = await state.search.search_from_cache(username, q, page, per_page)
        return ApiResponse(
            data=[item.model_dump(mode="json") for item in result.items],
            pagination={
                "page": result.page,
                "per_page": result.per_page,
                "total": result.total,
                "pages": result.total_pages,
            },
        )

    @app.post("/collection/{username}/preload", response_model=ApiResponse)
    async def preload(username: str, force: bool = False) -> ApiResponse:
        if cache.guard.is_held(username):
            return ApiResponse(data={"message": "Collection preloading already in progress"})
        job_id = cache.schedule_preload(username, force=force)
        return ApiResponse(
            data={"message": "Collection preloading started in background", "job_id": job_id}
        )

    @app.get("/collection/{username}/progress", response_model=ApiResponse)
    async def progress(username: str) -> ApiResponse:
        result = await cache.get_progress(username)
        return ApiResponse(data=result.model_dump(mode="json") if result else None)

    @app.get("/collection/{username}/check-new", response_model=ApiResponse)
    async def check_new(username: str) -> ApiResponse:
        result = await cache.check_for_new_items(username)
        return ApiResponse(
            success=result.success,
            data=result.model_dump(mode="json", exclude={"success", "error"}),
            error=result.error,
        )

    @app.post("/collection/{username}/update-new", response_model=ApiResponse)
    async def update_new(username: str) -> ApiResponse:
        result = await cache.update_cache_with_new_items(username)
        return ApiResponse(
            success=result.success,
            data=result.model_dump(mode="json", exclude={"success", "error"}),
            error=result.error,
        )

    @app.delete("/collection/{username}/cache", response_model=ApiResponse)
    async def clear_user_cache(username: str) -> ApiResponse:
        result = await cache.clear_cache(username)
        return ApiResponse(
            success=result.success,
            data={"message": f"Collection cache cleared for {username}", "deleted": result.deleted},
            error=result.error,
        )

    return app
