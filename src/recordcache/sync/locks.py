"""Per-subject single-flight guard for long-running cache operations."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

log = structlog.get_logger(__name__)


class KeyedFlightGuard:
    """Memory-only, non-reentrant flags keyed by subject.

    A second caller for a key that is already in flight is told so
    immediately instead of waiting.  Nothing here is persisted; a process
    restart ends every flight.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._held

    def held(self) -> list[str]:
        return sorted(self._held)

    def reset(self) -> None:
        self._held.clear()

    @asynccontextmanager
    async def flight(self, key: str) -> AsyncIterator[bool]:
        """Yield whether the flight for *key* was acquired; release it on exit."""
        acquired = self.try_acquire(key)
        if not acquired:
            log.info("flight_already_running", key=key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
