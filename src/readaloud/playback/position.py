"""Map playback position inside a chunk to a highlighted character."""

from __future__ import annotations

import math
from typing import Optional

from .chunker import TextChunk


def char_index_for_position(
    text_length: int,
    duration_millis: Optional[int],
    elapsed_millis: int,
) -> Optional[int]:
    """Linear interpolation of the spoken character.

    Assumes a constant speech rate across the chunk. Returns ``None`` when the
    duration is unknown, so no index math happens before a successful probe.
    """
    if text_length <= 0 or duration_millis is None or duration_millis <= 0:
        return None
    ratio = min(max(elapsed_millis / duration_millis, 0.0), 1.0)
    index = math.floor(ratio * text_length)
    return min(max(index, 0), text_length - 1)


class PositionTracker:
    """Remember the last highlighted index and report only changes."""

    def __init__(self) -> None:
        self.highlighted_index = -1

    def reset(self) -> None:
        self.highlighted_index = -1

    def update(self, chunk: TextChunk, elapsed_millis: int) -> Optional[int]:
        index = char_index_for_position(len(chunk.text), chunk.duration_millis, elapsed_millis)
        if index is None or index == self.highlighted_index:
            return None
        self.highlighted_index = index
        return index


__all__ = ["PositionTracker", "char_index_for_position"]
