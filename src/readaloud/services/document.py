"""Keep the last loaded text so a restart can offer to resume it."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class DocumentStore:
    def __init__(self, path: Path) -> None:
        self._path = path

    def _read(self) -> Optional[str]:
        if not self._path.exists():
            return None
        try:
            return self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read saved text %s: %s", self._path, exc)
            return None

    def _write(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(text, encoding="utf-8")

    async def load(self) -> Optional[str]:
        return await asyncio.to_thread(self._read)

    async def save(self, text: str) -> None:
        await asyncio.to_thread(self._write, text)

    async def clear(self) -> None:
        await asyncio.to_thread(self._path.unlink, missing_ok=True)


__all__ = ["DocumentStore"]
