"""Fire-and-forget execution of cache work, reported through the job tracker."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from recordcache.sync.jobs import JobTracker

log = structlog.get_logger(__name__)


class BackgroundTasks:
    """Runs coroutines as asyncio tasks without making the submitter wait.

    Outcomes go to the :class:`JobTracker` and the log, never back to the
    caller that submitted the work.
    """

    def __init__(self, tracker: JobTracker | None = None) -> None:
        self.tracker = tracker or JobTracker()
        self._tasks: set[asyncio.Task] = set()

    def submit(self, job_type: str, message: str, coro: Coroutine[Any, Any, Any]) -> str:
        """Start *coro* as a tracked job.

        Raises ``RuntimeError`` outside a running event loop; the job is then
        recorded as failed and *coro* is closed unawaited.
        """
        job_id = self.tracker.start_job(job_type, message)
        runner = self._run(job_id, job_type, coro)
        try:
            task = asyncio.create_task(runner, name=job_id)
        except RuntimeError as exc:
            runner.close()
            coro.close()
            self.tracker.fail_job(job_id, str(exc))
            log.error("background_job_not_started", job_id=job_id, type=job_type, error=str(exc))
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, job_id: str, job_type: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            with structlog.contextvars.bound_contextvars(job_id=job_id):
                result = await coro
        except Exception as exc:
            log.error("background_job_failed", job_id=job_id, type=job_type, error=str(exc))
            self.tracker.fail_job(job_id, str(exc))
            return

        error = getattr(result, "error", None)
        if getattr(result, "success", True) is False or getattr(result, "status", None) == "failed":
            self.tracker.fail_job(job_id, error or "failed")
        else:
            self.tracker.complete_job(job_id, _summarize(job_type, result))


def _summarize(job_type: str, result: object) -> str | None:
    if result is None:
        return None
    if hasattr(result, "new_items_added"):
        return f"{job_type}: added {result.new_items_added} new items"
    if hasattr(result, "completed_pages"):
        return f"{job_type}: cached {len(result.completed_pages)}/{result.total_pages} pages"
    return None
