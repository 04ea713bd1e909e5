"""Tests for the recordcache blob store."""

from __future__ import annotations

import pytest
import pytest_asyncio

from recordcache.storage import BlobStore


@pytest_asyncio.fixture()
async def store(tmp_path):
    """Provide a fresh blob store for each test."""
    blobs = BlobStore(tmp_path / "test.db")
    await blobs.connect()
    yield blobs
    await blobs.close()


# ---------------------------------------------------------------------------
# Schema / connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_connect_creates_table(store: BlobStore):
    cur = await store.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in await cur.fetchall()}
    assert "blobs" in tables


@pytest.mark.asyncio()
async def test_conn_before_connect_raises(tmp_path):
    blobs = BlobStore(tmp_path / "x.db")
    with pytest.raises(RuntimeError, match="not connected"):
        _ = blobs.conn


@pytest.mark.asyncio()
async def test_async_context_manager(tmp_path):
    async with BlobStore(tmp_path / "ctx.db") as blobs:
        await blobs.write_json("a.json", {"x": 1})
        assert await blobs.read_json("a.json") == {"x": 1}
    assert blobs._conn is None


# ---------------------------------------------------------------------------
# Read / write / delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_read_missing_returns_none(store: BlobStore):
    assert await store.read_json("collections/nobody-page-1.json") is None


@pytest.mark.asyncio()
async def test_write_overwrites(store: BlobStore):
    await store.write_json("k.json", {"v": 1})
    await store.write_json("k.json", {"v": 2})
    assert await store.read_json("k.json") == {"v": 2}


@pytest.mark.asyncio()
async def test_read_undecodable_returns_none(store: BlobStore):
    await store._put("broken.json", "{not json")
    await store.conn.commit()
    assert await store.read_json("broken.json") is None


@pytest.mark.asyncio()
async def test_exists(store: BlobStore):
    assert await store.exists("k.json") is False
    await store.write_json("k.json", [])
    assert await store.exists("k.json") is True


@pytest.mark.asyncio()
async def test_delete_reports_removal(store: BlobStore):
    await store.write_json("k.json", 1)
    assert await store.delete("k.json") is True
    assert await store.delete("k.json") is False
    assert await store.read_json("k.json") is None


@pytest.mark.asyncio()
async def test_write_with_backup_keeps_previous(store: BlobStore):
    await store.write_json_with_backup("p.json", {"v": 1})
    assert await store.exists("p.json.bak") is False

    await store.write_json_with_backup("p.json", {"v": 2})
    assert await store.read_json("p.json") == {"v": 2}
    assert await store.read_json("p.json.bak") == {"v": 1}


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_list_files_direct_children_only(store: BlobStore):
    await store.write_json("collections/alice-page-1.json", {})
    await store.write_json("collections/alice-progress.json", {})
    await store.write_json("collections/nested/deep.json", {})
    await store.write_json("other/bob-page-1.json", {})

    names = await store.list_files("collections")
    assert names == ["alice-page-1.json", "alice-progress.json"]


@pytest.mark.asyncio()
async def test_list_files_escapes_wildcards(store: BlobStore):
    await store.write_json("a_b/x.json", {})
    await store.write_json("aXb/y.json", {})

    assert await store.list_files("a_b") == ["x.json"]


@pytest.mark.asyncio()
async def test_list_files_empty_directory(store: BlobStore):
    assert await store.list_files("collections/") == []
