"""Playback core: chunking, buffering, highlight tracking and orchestration.

The controller lives in :mod:`readaloud.playback.controller`; import it from
there.
"""

from .chunker import TextChunk, find_chunk_index, split_text
from .position import PositionTracker, char_index_for_position

__all__ = [
    "PositionTracker",
    "TextChunk",
    "char_index_for_position",
    "find_chunk_index",
    "split_text",
]
