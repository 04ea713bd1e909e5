"""Raw Discogs entry transformation and pure collection helpers."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, timezone

from recordcache.storage.models import (
    CollectionItem,
    Pagination,
    Release,
    ReleaseDetails,
    Track,
)

UNKNOWN_ARTIST = "Unknown Artist"


def _join_names(entries: list[dict] | None) -> str:
    names = [e.get("name", "") for e in entries or [] if e.get("name")]
    return ", ".join(names)


def _release_fields(info: dict) -> dict:
    return {
        "id": info["id"],
        "master_id": info.get("master_id") or None,
        "title": info.get("title") or "",
        "artist": _join_names(info.get("artists")) or UNKNOWN_ARTIST,
        "year": info.get("year") or None,
        "format": [f["name"] for f in info.get("formats") or [] if f.get("name")],
        "label": [lb["name"] for lb in info.get("labels") or [] if lb.get("name")],
        "catalog_number": info.get("catalog_number"),
        "resource_url": info.get("resource_url"),
    }


def transform_entry(raw: dict) -> CollectionItem:
    """Convert one ``releases[]`` entry of a collection response."""
    info = raw.get("basic_information") or {}
    release = Release(**_release_fields(info), cover_image=info.get("cover_image"))
    return CollectionItem(
        id=raw["id"],
        date_added=raw.get("date_added") or "",
        rating=raw.get("rating"),
        notes=raw.get("notes"),
        release=release,
    )


def transform_release(raw: dict) -> ReleaseDetails:
    """Convert a ``/releases/{id}`` response."""
    images = raw.get("images") or []
    tracklist = [
        Track(
            position=t.get("position") or "",
            title=t.get("title") or "",
            duration=t.get("duration") or None,
            artist=_join_names(t.get("artists")) or None,
        )
        for t in raw.get("tracklist") or []
    ]
    return ReleaseDetails(
        **_release_fields(raw),
        cover_image=images[0].get("uri") if images else None,
        tracklist=tracklist,
    )


def parse_added_at(value: str | None) -> int | None:
    """Parse a Discogs ``date_added`` string into epoch milliseconds."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def is_cache_valid(timestamp: int | None, now: int, max_age_ms: int) -> bool:
    """A cached page is valid while strictly younger than *max_age_ms*."""
    return now - (timestamp or 0) < max_age_ms


def dedupe_items(items: Iterable[CollectionItem]) -> list[CollectionItem]:
    """Drop repeated item ids, keeping the first occurrence."""
    seen: set[int] = set()
    result: list[CollectionItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        result.append(item)
    return result


def matches_query(item: CollectionItem, query: str) -> bool:
    needle = query.lower()
    return needle in item.release.title.lower() or needle in item.release.artist.lower()


def paginate(
    items: list[CollectionItem], page: int, per_page: int
) -> tuple[list[CollectionItem], int]:
    """Return the slice for *page* (1-based) and the total page count."""
    total_pages = math.ceil(len(items) / per_page) if per_page > 0 else 0
    start = (max(page, 1) - 1) * per_page
    return items[start : start + per_page], total_pages


def repaginate(
    items: list[CollectionItem], per_page: int
) -> list[tuple[list[CollectionItem], Pagination]]:
    """Split *items* into consecutive pages with matching pagination blocks."""
    total_pages = math.ceil(len(items) / per_page)
    pages = []
    for page in range(1, total_pages + 1):
        chunk = items[(page - 1) * per_page : page * per_page]
        pages.append(
            (chunk, Pagination(page=page, pages=total_pages, per_page=per_page, items=len(items)))
        )
    return pages
