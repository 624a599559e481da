"""Split text into fixed-size request units."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass
class TextChunk:
    """A contiguous slice of the source text.

    ``start_offset`` is the stable identity of the chunk (bookmarks and resume
    refer to it). ``duration_millis`` stays ``None`` until audio for the chunk
    has been fetched and measured.
    """

    text: str
    start_offset: int
    end_offset: int
    duration_millis: Optional[int] = None

    def __len__(self) -> int:
        return self.end_offset - self.start_offset


def split_text(text: str, max_chars: int) -> list[TextChunk]:
    """Cut ``text`` every ``max_chars`` characters.

    Purely by character count: a word may be split across two chunks. Empty
    text or a non-positive size gives an empty list.
    """
    if not text or max_chars <= 0:
        return []
    chunks: list[TextChunk] = []
    for start in range(0, len(text), max_chars):
        end = min(start + max_chars, len(text))
        chunks.append(TextChunk(text=text[start:end], start_offset=start, end_offset=end))
    return chunks


def find_chunk_index(chunks: Sequence[TextChunk], start_offset: int) -> Optional[int]:
    for index, chunk in enumerate(chunks):
        if chunk.start_offset == start_offset:
            return index
    return None


__all__ = ["TextChunk", "find_chunk_index", "split_text"]
