"""Durable rolling log of user-facing errors (newest first, bounded)."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100


class ErrorLogStore:
    """Keep the last ``max_entries`` error messages on disk.

    Entries are plain strings prefixed with a local timestamp,
    ``[YYYY-MM-DD HH:MM:SS] message``, newest first.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_entries: int = MAX_LOG_ENTRIES,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._path = path
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: List[str] = self._load_from_disk()

    def _load_from_disk(self) -> List[str]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read error log %s: %s", self._path, exc)
            return []
        if not isinstance(raw, list):
            return []
        return [str(item) for item in raw][: self._max_entries]

    def _save_to_disk(self, entries: List[str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            json.dumps(entries, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )

    def _remove_from_disk(self) -> None:
        self._path.unlink(missing_ok=True)

    async def add(self, message: str) -> str:
        timestamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"[{timestamp}] {message}"
        async with self._lock:
            self._entries.insert(0, entry)
            del self._entries[self._max_entries :]
            snapshot = list(self._entries)
            await asyncio.to_thread(self._save_to_disk, snapshot)
        return entry

    async def entries(self, limit: Optional[int] = None) -> List[str]:
        async with self._lock:
            if limit is None:
                return list(self._entries)
            return self._entries[:limit]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            await asyncio.to_thread(self._remove_from_disk)
        logger.info("Error log cleared")


__all__ = ["ErrorLogStore", "MAX_LOG_ENTRIES"]
