"""Wiring for the long-running API server.

Builds the blob store, Discogs client, cache engine and refresh scheduler,
then serves the HTTP API with uvicorn until a termination signal arrives.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn

from recordcache.config import AppConfig
from recordcache.storage import BlobStore
from recordcache.sync.background import BackgroundTasks
from recordcache.sync.discogs import DiscogsClient
from recordcache.sync.engine import CollectionCache

log = structlog.get_logger(__name__)


@asynccontextmanager
async def open_cache(app_config: AppConfig) -> AsyncIterator[CollectionCache]:
    """Connect the store and client, yield a ready engine, close both on exit."""
    app_config.base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    store = BlobStore(app_config.store_path)
    await store.connect()
    try:
        async with DiscogsClient(app_config.discogs) as client:
            cache = CollectionCache(app_config, store, client, tasks=BackgroundTasks())
            try:
                yield cache
            finally:
                await cache.tasks.drain()
    finally:
        await store.close()


async def serve(app_config: AppConfig, *, host: str = "127.0.0.1", port: int | None = None) -> None:
    """Run the API server (and the refresh scheduler when configured)."""
    from recordcache.server.api import AppState, create_api_app
    from recordcache.sync.scheduler import RefreshScheduler
    from recordcache.sync.search import CacheSearch

    async with open_cache(app_config) as cache:
        scheduler = None
        if app_config.sync.auto_refresh and app_config.discogs.username:
            scheduler = RefreshScheduler(
                cache,
                app_config.discogs.username,
                interval_minutes=app_config.sync.interval_minutes,
            )

        state = AppState(cache, CacheSearch(cache), scheduler)

        if scheduler and app_config.is_discogs_configured():
            await scheduler.start()

        # Install signal handlers via the event loop so they can safely
        # set the asyncio.Event.
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, state.request_shutdown)

        server = uvicorn.Server(
            uvicorn.Config(
                create_api_app(state),
                host=host,
                port=port or app_config.daemon.api_port,
                log_level="info",
                loop="asyncio",
            )
        )
        server_task = asyncio.create_task(server.serve())
        log.info("api_started", host=host, port=port or app_config.daemon.api_port)

        # Uvicorn may take over SIGINT/SIGTERM itself, so also stop when it exits.
        shutdown_task = asyncio.create_task(state.shutdown_event.wait())
        await asyncio.wait({server_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        shutdown_task.cancel()
        log.info("initiating graceful shutdown")

        if scheduler:
            await scheduler.stop()

        server.should_exit = True
        await server_task

    log.info("server shut down cleanly")
