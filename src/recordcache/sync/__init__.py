"""Cache engine, search, scheduler and the Discogs client."""

from recordcache.sync.background import BackgroundTasks
from recordcache.sync.engine import CollectionCache
from recordcache.sync.jobs import JobTracker
from recordcache.sync.locks import KeyedFlightGuard
from recordcache.sync.scheduler import RefreshScheduler
from recordcache.sync.search import CacheSearch

__all__ = [
    "BackgroundTasks",
    "CacheSearch",
    "CollectionCache",
    "JobTracker",
    "KeyedFlightGuard",
    "RefreshScheduler",
]
