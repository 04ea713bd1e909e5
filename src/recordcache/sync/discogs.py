"""Async Discogs API client using httpx.

Endpoints:
- GET /users/{username}/collection/folders/0/releases (collection pages)
- GET /releases/{id} (release details)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx
import structlog

from recordcache.config import DiscogsConfig
from recordcache.storage.models import Pagination

log = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_DEFAULT_RETRY_AFTER = 1


class DiscogsAuthError(Exception):
    """Raised when no credential is available or Discogs rejects it."""


class DiscogsAPIError(Exception):
    """Raised for non-retryable Discogs API errors."""


@dataclass
class RemotePage:
    """One page of raw collection entries plus pagination metadata."""

    releases: list[dict] = field(default_factory=list)
    pagination: Pagination | None = None


class DiscogsClient:
    """Async Discogs client for collection pages and release lookups."""

    def __init__(
        self,
        config: DiscogsConfig,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> DiscogsClient:
        kw: dict = {
            "base_url": self._config.base_url,
            "timeout": self._config.timeout_seconds,
            "headers": {"User-Agent": self._config.user_agent},
        }
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- auth --

    def _auth_headers(self) -> dict[str, str]:
        token = self._config.token.get_secret_value()
        if not token:
            raise DiscogsAuthError("No Discogs token available. Please authenticate first.")
        if token.startswith("Discogs token="):
            return {"Authorization": token}
        return {"Authorization": f"Discogs token={token}"}

    # -- request helper --

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        assert self._client is not None  # noqa: S101

        headers = self._auth_headers() if authenticated else {}

        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.request(method, url, headers=headers, params=params)
            except httpx.TransportError as exc:
                if attempt >= _MAX_RETRIES - 1:
                    raise DiscogsAPIError(f"Network error after {_MAX_RETRIES} retries: {exc}") from exc
                wait = 2**attempt
                log.warning(
                    "discogs_network_error",
                    error=str(exc),
                    retry_in=wait,
                    attempt=attempt,
                )
                await asyncio.sleep(wait)
                continue

            if resp.status_code in (401, 403):
                raise DiscogsAuthError(f"Discogs rejected the request: {resp.status_code} {resp.text}")

            if resp.status_code == 429:
                retry_after = _retry_after_seconds(resp.headers.get("Retry-After"))
                log.warning(
                    "discogs_rate_limited",
                    retry_after=retry_after,
                    attempt=attempt,
                )
                await asyncio.sleep(retry_after)
                continue

            if resp.status_code >= 400:
                raise DiscogsAPIError(f"Discogs API error: {resp.status_code} {resp.text}")

            return resp

        raise DiscogsAPIError(f"Max retries ({_MAX_RETRIES}) exceeded")

    # -- public API --

    async def fetch_page(
        self,
        username: str,
        page: int,
        per_page: int,
        *,
        sort: str | None = None,
        sort_order: str | None = None,
        authenticated: bool = True,
    ) -> RemotePage:
        """Fetch one page of *username*'s collection (folder 0, all releases)."""
        params: dict = {"page": page, "per_page": per_page}
        if sort:
            params["sort"] = sort
        if sort_order:
            params["sort_order"] = sort_order

        resp = await self._request(
            "GET",
            f"/users/{username}/collection/folders/0/releases",
            params=params,
            authenticated=authenticated,
        )
        data = resp.json()
        raw_pagination = data.get("pagination")
        pagination = (
            Pagination(
                page=raw_pagination.get("page", page),
                pages=raw_pagination.get("pages", 0),
                per_page=raw_pagination.get("per_page", per_page),
                items=raw_pagination.get("items", 0),
            )
            if raw_pagination
            else None
        )
        return RemotePage(releases=data.get("releases") or [], pagination=pagination)

    async def get_release(self, release_id: int) -> dict:
        """Fetch the full release record for *release_id*."""
        resp = await self._request("GET", f"/releases/{release_id}")
        return resp.json()


def _retry_after_seconds(value: str | None) -> int:
    """Delay-seconds form of ``Retry-After``; anything else waits one second."""
    try:
        return max(int(value), 0)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return _DEFAULT_RETRY_AFTER
