"""Tests for the small JSON-backed stores: bookmarks, error log, document."""

from __future__ import annotations

import json
from datetime import datetime

import pytest

from readaloud.services.bookmarks import BookmarkStore
from readaloud.services.document import DocumentStore
from readaloud.services.error_log import ErrorLogStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_bookmarks_are_sorted_and_unique(tmp_path) -> None:
    path = tmp_path / "bookmarks.json"
    store = BookmarkStore(path)

    assert await store.add(600)
    assert await store.add(0)
    assert not await store.add(600)

    assert await store.list() == [0, 600]
    assert json.loads(path.read_text(encoding="utf-8")) == [0, 600]
    assert await BookmarkStore(path).list() == [0, 600]


@pytest.mark.anyio
async def test_bookmark_toggle_remove_and_clear(tmp_path) -> None:
    store = BookmarkStore(tmp_path / "bookmarks.json")

    assert await store.toggle(300)
    assert await store.contains(300)
    assert not await store.toggle(300)
    assert not await store.contains(300)

    await store.replace([900, 300])
    assert await store.remove(900)
    assert not await store.remove(900)
    assert await store.list() == [300]

    await store.clear()
    assert await store.list() == []


def test_bookmarks_skip_invalid_entries(tmp_path) -> None:
    path = tmp_path / "bookmarks.json"
    path.write_text('[300, "x", "600", null]', encoding="utf-8")

    store = BookmarkStore(path)

    assert sorted(store._offsets) == [300, 600]


@pytest.mark.anyio
async def test_error_log_is_newest_first_and_capped(tmp_path) -> None:
    path = tmp_path / "errors.json"
    store = ErrorLogStore(path, max_entries=3, clock=lambda: datetime(2024, 1, 2, 3, 4, 5))

    for number in range(1, 5):
        await store.add(f"failure {number}")

    assert await store.entries() == [
        "[2024-01-02 03:04:05] failure 4",
        "[2024-01-02 03:04:05] failure 3",
        "[2024-01-02 03:04:05] failure 2",
    ]
    assert await store.entries(limit=1) == ["[2024-01-02 03:04:05] failure 4"]

    reloaded = ErrorLogStore(path, max_entries=3)
    assert len(await reloaded.entries()) == 3

    await store.clear()
    assert await store.entries() == []
    assert not path.exists()


@pytest.mark.anyio
async def test_document_store_round_trip(tmp_path) -> None:
    store = DocumentStore(tmp_path / "state" / "document.txt")

    assert await store.load() is None
    await store.save("第一章 some text")
    assert await store.load() == "第一章 some text"
    await store.clear()
    assert await store.load() is None
