"""recordcache storage layer: JSON blob store and cached data models."""

from recordcache.storage.blobs import BlobStore
from recordcache.storage.models import (
    CacheClear,
    CacheUpdate,
    CollectionItem,
    CollectionPage,
    CollectionSnapshot,
    NewItemsCheck,
    Pagination,
    PreloadProgress,
    Release,
    ReleaseDetails,
    SearchPage,
    Track,
)

__all__ = [
    "BlobStore",
    "CacheClear",
    "CacheUpdate",
    "CollectionItem",
    "CollectionPage",
    "CollectionSnapshot",
    "NewItemsCheck",
    "Pagination",
    "PreloadProgress",
    "Release",
    "ReleaseDetails",
    "SearchPage",
    "Track",
]
