"""Async SQLite-backed JSON blob store for cached collection pages."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

log = structlog.get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS blobs (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_BACKUP_SUFFIX = ".bak"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class BlobStore:
    """Key-value JSON storage keyed by slash-separated paths.

    Keys look like file paths (``collections/alice-page-1.json``) so that
    callers can treat the store as a small disk abstraction: read, write,
    delete and list the "files" of a "directory".
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Blob store not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> BlobStore:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- reads ----------------------------------------------------------------

    async def read_json(self, key: str) -> Any | None:
        """Return the decoded blob at *key*, or ``None`` if absent or unreadable."""
        cur = await self.conn.execute("SELECT value FROM blobs WHERE key = ?", (key,))
        row = await cur.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as exc:
            log.warning("blob_decode_failed", key=key, error=str(exc))
            return None

    async def exists(self, key: str) -> bool:
        cur = await self.conn.execute("SELECT 1 FROM blobs WHERE key = ?", (key,))
        return await cur.fetchone() is not None

    async def list_files(self, prefix: str) -> list[str]:
        """List the names stored directly under the directory *prefix*."""
        directory = prefix.rstrip("/") + "/"
        cur = await self.conn.execute(
            "SELECT key FROM blobs WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (_like_escape(directory) + "%",),
        )
        rows = await cur.fetchall()
        names = [row["key"][len(directory) :] for row in rows]
        return [name for name in names if name and "/" not in name]

    # -- writes ---------------------------------------------------------------

    async def write_json(self, key: str, value: Any) -> None:
        await self._put(key, json.dumps(value))
        await self.conn.commit()

    async def write_json_with_backup(self, key: str, value: Any) -> None:
        """Write *value*, keeping the previous blob (if any) at ``key + '.bak'``."""
        cur = await self.conn.execute("SELECT value FROM blobs WHERE key = ?", (key,))
        row = await cur.fetchone()
        if row is not None:
            await self._put(key + _BACKUP_SUFFIX, row["value"])
        await self._put(key, json.dumps(value))
        await self.conn.commit()

    async def delete(self, key: str) -> bool:
        """Delete *key*; return ``True`` if something was removed."""
        cur = await self.conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
        await self.conn.commit()
        return cur.rowcount > 0

    async def _put(self, key: str, raw: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO blobs (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, raw, _now_iso()),
        )
