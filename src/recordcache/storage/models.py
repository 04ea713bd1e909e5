"""Pydantic models for cached collection data and engine results."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ProgressStatus = Literal["loading", "completed", "failed"]


class Release(BaseModel):
    """Release metadata embedded in a collection item."""

    id: int
    master_id: int | None = None
    title: str = ""
    artist: str = "Unknown Artist"
    year: int | None = None
    format: list[str] = Field(default_factory=list)
    label: list[str] = Field(default_factory=list)
    catalog_number: str | None = None
    cover_image: str | None = None
    resource_url: str | None = None


class CollectionItem(BaseModel):
    """One owned entry in a user's collection."""

    id: int
    date_added: str
    rating: int | None = None
    notes: list[Any] | str | None = None
    release: Release


class Pagination(BaseModel):
    page: int
    pages: int
    per_page: int
    items: int


class CollectionPage(BaseModel):
    """A persisted unit of cache.

    ``timestamp`` is the epoch-ms time at which the fetch *started*, so items
    added remotely while a fetch was in flight still count as new later.
    """

    success: bool = True
    data: list[CollectionItem] = Field(default_factory=list)
    pagination: Pagination | None = None
    timestamp: int = 0
    error: str | None = None


class PreloadProgress(BaseModel):
    """Advisory state of a full-collection preload."""

    username: str
    total_pages: int = 0
    current_page: int = 0
    completed_pages: list[int] = Field(default_factory=list)
    failed_pages: list[int] = Field(default_factory=list)
    start_time: int | None = None
    status: ProgressStatus = "loading"
    end_time: int | None = None
    error: str | None = None


class Track(BaseModel):
    position: str = ""
    title: str = ""
    duration: str | None = None
    artist: str | None = None


class ReleaseDetails(Release):
    """Full release record, including its tracklist."""

    tracklist: list[Track] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Result envelopes
# ---------------------------------------------------------------------------


class NewItemsCheck(BaseModel):
    success: bool
    new_items_count: int = 0
    latest_cache_date: str | None = None
    latest_remote_date: str | None = None
    ordering_violated: bool = False
    error: str | None = None


class CacheUpdate(BaseModel):
    success: bool
    new_items_added: int = 0
    pages_written: int = 0
    pages_removed: int = 0
    error: str | None = None


class CollectionSnapshot(BaseModel):
    """Every cached item for a user, concatenated and deduplicated."""

    success: bool = True
    data: list[CollectionItem] = Field(default_factory=list)
    total: int = 0
    stale: bool = False
    timestamp: int = 0
    error: str | None = None


class SearchPage(BaseModel):
    items: list[CollectionItem] = Field(default_factory=list)
    total: int = 0
    total_pages: int = 0
    page: int = 1
    per_page: int = 50


class CacheClear(BaseModel):
    success: bool
    deleted: int = 0
    error: str | None = None
