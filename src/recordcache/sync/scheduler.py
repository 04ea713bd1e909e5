"""Refresh scheduler that keeps one user's cache warm on a configurable interval."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from recordcache.sync.engine import NO_CACHED_DATA

if TYPE_CHECKING:
    from recordcache.sync.engine import CollectionCache

log = structlog.get_logger(__name__)


class RefreshScheduler:
    """Periodically refreshes a user's cache with support for pause/resume and manual trigger.

    A cycle runs a full preload when nothing is cached yet, otherwise it
    checks for new items and merges them when there are any.
    """

    def __init__(
        self,
        cache: CollectionCache,
        username: str,
        interval_minutes: int = 60,
    ) -> None:
        self._cache = cache
        self._username = username
        self._interval = interval_minutes * 60  # seconds
        self._paused = False
        self._stop_event = asyncio.Event()
        self._trigger_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_refresh_at: datetime | None = None
        self._next_refresh_at: datetime | None = None
        self._last_result: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        log.info("scheduler_started", username=self._username, interval_minutes=self._interval // 60)

    async def stop(self) -> None:
        """Stop the scheduler, waiting for any in-progress refresh to complete."""
        if not self.is_running:
            return
        self._stop_event.set()
        self._trigger_event.set()  # wake up if sleeping
        if self._task:
            await self._task
            self._task = None
        log.info("scheduler_stopped")

    def trigger_now(self) -> None:
        self._trigger_event.set()

    def pause(self) -> None:
        self._paused = True
        log.info("scheduler_paused")

    def resume(self) -> None:
        self._paused = False
        log.info("scheduler_resumed")

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "paused": self._paused,
            "username": self._username,
            "interval_minutes": self._interval // 60,
            "last_refresh_at": self._last_refresh_at.isoformat() if self._last_refresh_at else None,
            "next_refresh_at": self._next_refresh_at.isoformat() if self._next_refresh_at else None,
            "last_result": self._last_result,
        }

    async def refresh_once(self) -> str:
        """Run a single refresh cycle and describe what it did."""
        check = await self._cache.check_for_new_items(self._username)
        if not check.success and check.error == NO_CACHED_DATA:
            result = await self._cache.preload_all(self._username)
            if result is None:
                return "preload already running"
            return f"preload {result.status}"
        if not check.success:
            return f"check failed: {check.error}"
        if check.new_items_count == 0:
            return "up to date"

        update = await self._cache.update_cache_with_new_items(self._username)
        if not update.success:
            return f"update failed: {update.error}"
        return f"added {update.new_items_added} items"

    async def _loop(self) -> None:
        first_run = True
        while not self._stop_event.is_set():
            if first_run:
                first_run = False
                self._next_refresh_at = datetime.now(UTC).replace(microsecond=0)
            else:
                self._next_refresh_at = datetime.now(UTC).replace(microsecond=0) + timedelta(
                    seconds=self._interval
                )

                # Interruptible sleep
                self._trigger_event.clear()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wait_for_trigger_or_stop(),
                        timeout=self._interval,
                    )

            if self._stop_event.is_set():
                break

            if self._paused:
                continue

            self._trigger_event.clear()

            try:
                self._last_result = await self.refresh_once()
                self._last_refresh_at = datetime.now(UTC)
                log.info("scheduled_refresh_done", username=self._username, result=self._last_result)
            except Exception as exc:
                self._last_result = f"error: {exc}"
                log.error("scheduled_refresh_failed", username=self._username, error=str(exc))

    async def _wait_for_trigger_or_stop(self) -> None:
        """Wait until either trigger or stop event is set."""
        trigger_task = asyncio.create_task(self._trigger_event.wait())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                {trigger_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for t in (trigger_task, stop_task):
                if not t.done():
                    t.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await t
