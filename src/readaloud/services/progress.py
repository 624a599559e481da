"""Save and restore the reading position of the current text."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, ValidationError

from ..playback.chunker import TextChunk, find_chunk_index

logger = logging.getLogger(__name__)

_HASH_MASK = (1 << 63) - 1


def text_content_hash(text: str) -> int:
    """Stable 63-bit fingerprint of ``text``.

    Built-in ``hash()`` is salted per process, so a saved value would never
    match after a restart.
    """
    digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & _HASH_MASK


class SavedProgress(BaseModel):
    text_hash: int
    chunk_start_offset: int
    position_ms: int = 0


@dataclass(frozen=True)
class ResumeOffer:
    """A saved position that belongs to the text currently loaded."""

    chunk_start_offset: int
    position_ms: int


@dataclass(frozen=True)
class ResumeTarget:
    chunk_index: int
    position_ms: int


class ProgressStore:
    """Single-slot JSON store: every save overwrites the previous one."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    def _read(self) -> Optional[SavedProgress]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return SavedProgress.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable progress file %s: %s", self._path, exc)
            return None

    def _write(self, progress: SavedProgress) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(progress.model_dump_json(indent=2), encoding="utf-8")

    async def save(self, progress: SavedProgress) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, progress)

    async def load(self) -> Optional[SavedProgress]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._path.unlink, missing_ok=True)


class ProgressPersistence:
    """Tie the progress slot to a specific text by its content hash."""

    def __init__(self, store: ProgressStore) -> None:
        self._store = store

    async def save(self, text: str, chunk_start_offset: int, position_ms: int) -> None:
        progress = SavedProgress(
            text_hash=text_content_hash(text),
            chunk_start_offset=chunk_start_offset,
            position_ms=max(0, int(position_ms)),
        )
        await self._store.save(progress)
        logger.debug(
            "Saved progress at offset %d, %d ms", chunk_start_offset, progress.position_ms
        )

    async def offer(self, text: str) -> Optional[ResumeOffer]:
        """Return the saved position when it was recorded for this exact text."""
        if not text:
            return None
        saved = await self._store.load()
        if saved is None or saved.text_hash != text_content_hash(text):
            return None
        return ResumeOffer(
            chunk_start_offset=saved.chunk_start_offset,
            position_ms=saved.position_ms,
        )

    @staticmethod
    def resolve(offer: ResumeOffer, chunks: Sequence[TextChunk]) -> Optional[ResumeTarget]:
        index = find_chunk_index(chunks, offer.chunk_start_offset)
        if index is None:
            return None
        return ResumeTarget(chunk_index=index, position_ms=offer.position_ms)

    async def clear(self) -> None:
        await self._store.clear()


__all__ = [
    "ProgressPersistence",
    "ProgressStore",
    "ResumeOffer",
    "ResumeTarget",
    "SavedProgress",
    "text_content_hash",
]
