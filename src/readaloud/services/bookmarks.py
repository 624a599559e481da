"""Bookmarks are chunk start offsets, kept sorted and unique."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


class BookmarkStore:
    """Persist a sorted set of chunk start offsets as a JSON list."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._offsets: set[int] = self._load_from_disk()

    def _load_from_disk(self) -> set[int]:
        if not self._path.exists():
            return set()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read bookmarks file %s: %s", self._path, exc)
            return set()
        if not isinstance(raw, list):
            return set()
        offsets: set[int] = set()
        for item in raw:
            try:
                offsets.add(int(item))
            except (TypeError, ValueError):
                logger.warning("Skipping invalid bookmark entry: %r", item)
        return offsets

    def _save_to_disk(self, offsets: List[int]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(offsets) + "\n", encoding="utf-8")

    async def _persist_locked(self) -> List[int]:
        snapshot = sorted(self._offsets)
        await asyncio.to_thread(self._save_to_disk, snapshot)
        return snapshot

    async def list(self) -> List[int]:
        async with self._lock:
            return sorted(self._offsets)

    async def contains(self, offset: int) -> bool:
        async with self._lock:
            return offset in self._offsets

    async def add(self, offset: int) -> bool:
        """Add ``offset``; returns False when it was already bookmarked."""
        async with self._lock:
            if offset in self._offsets:
                return False
            self._offsets.add(offset)
            await self._persist_locked()
        logger.info("Bookmark added at offset %d", offset)
        return True

    async def remove(self, offset: int) -> bool:
        async with self._lock:
            if offset not in self._offsets:
                return False
            self._offsets.discard(offset)
            await self._persist_locked()
        logger.info("Bookmark removed at offset %d", offset)
        return True

    async def toggle(self, offset: int) -> bool:
        """Flip ``offset``; returns whether it is bookmarked afterwards."""
        async with self._lock:
            if offset in self._offsets:
                self._offsets.discard(offset)
                added = False
            else:
                self._offsets.add(offset)
                added = True
            await self._persist_locked()
        return added

    async def replace(self, offsets: Iterable[int]) -> List[int]:
        async with self._lock:
            self._offsets = {int(offset) for offset in offsets}
            return await self._persist_locked()

    async def clear(self) -> None:
        async with self._lock:
            self._offsets.clear()
            await self._persist_locked()
        logger.info("All bookmarks cleared")


__all__ = ["BookmarkStore"]
