"""One playback run over a chunk list, from its first fetch to its teardown."""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Optional, Sequence, Union

from .chunker import TextChunk
from .pipeline import PreloadedChunk, PreloadFetchPipeline, StreamingFetchPipeline
from .position import PositionTracker

Pipeline = Union[StreamingFetchPipeline, PreloadFetchPipeline]


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class PlaybackSession:
    """Mutable state of the active run.

    Everything here is written from the event loop only. The two index fields
    are always assigned together through :meth:`set_position` so a snapshot
    never pairs a new chunk with the previous chunk's highlight.
    """

    def __init__(
        self,
        chunks: Sequence[TextChunk],
        start_index: int,
        pipeline: Pipeline,
    ) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.chunks = chunks
        self.start_index = start_index
        self.pipeline = pipeline
        self.state = SessionState.LOADING
        self.currently_playing_index = -1
        self.highlighted_char_index = -1
        self.current_file: Optional[PreloadedChunk] = None
        self.tracker = PositionTracker()
        self.loading_task: Optional[asyncio.Task] = None
        self.tasks: set[asyncio.Task] = set()
        self.last_error: Optional[str] = None
        # Offset the first chunk starts at; saved once when that chunk is entered
        self.resume_position_ms = 0
        self.alive = True

    @property
    def streaming(self) -> bool:
        return isinstance(self.pipeline, StreamingFetchPipeline)

    @property
    def current_chunk(self) -> Optional[TextChunk]:
        if 0 <= self.currently_playing_index < len(self.chunks):
            return self.chunks[self.currently_playing_index]
        return None

    def set_position(self, chunk_index: int, highlighted_char_index: int = -1) -> None:
        self.currently_playing_index, self.highlighted_char_index = (
            chunk_index,
            highlighted_char_index,
        )
        if highlighted_char_index < 0:
            self.tracker.reset()


__all__ = ["Pipeline", "PlaybackSession", "SessionState"]
