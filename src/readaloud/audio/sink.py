"""Audio sink capability interface.

The playback engine is a black box that decodes and outputs audio. The fetch
pipeline only needs one of two capabilities from it:

- :class:`PlaylistAudioSink`: an appendable in-memory playlist, reporting
  which playlist index is current (streaming append buffering).
- :class:`FileAudioSink`: plays one file at a time and reports completion
  (discrete temp-file buffering).

Sinks push :class:`SinkEvent` objects to registered listeners from the event
loop. Listeners must be quick and non-blocking; anything slow is scheduled as
a task by the listener itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SinkEventKind(str, Enum):
    INDEX_CHANGED = "index_changed"
    POSITION = "position"
    PLAYER_STATE = "player_state"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SinkEvent:
    kind: SinkEventKind
    index: Optional[int] = None
    position_ms: Optional[int] = None
    playing: Optional[bool] = None


SinkListener = Callable[[SinkEvent], None]


class AudioSink(ABC):
    """Common transport controls and event fan-out."""

    def __init__(self) -> None:
        self._listeners: list[SinkListener] = []

    def add_listener(self, listener: SinkListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, event: SinkEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sink listener failed for %s", event.kind.value)

    @property
    @abstractmethod
    def playing(self) -> bool: ...

    @property
    @abstractmethod
    def position_ms(self) -> int: ...

    @abstractmethod
    async def play(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def set_speed(self, speed: float) -> None: ...

    async def dispose(self) -> None:
        await self.stop()
        self._listeners.clear()


class PlaylistAudioSink(AudioSink):
    """Engine fed from an appendable list of in-memory audio sources."""

    @property
    @abstractmethod
    def playlist_length(self) -> int: ...

    @property
    @abstractmethod
    def current_index(self) -> Optional[int]: ...

    @abstractmethod
    async def reset_playlist(self) -> None:
        """Stop and drop every source; the next ``play`` starts at index 0."""

    @abstractmethod
    async def append(self, audio: bytes, content_type: str = "audio/mpeg") -> None: ...

    @abstractmethod
    async def seek(self, position_ms: int, index: Optional[int] = None) -> None: ...


class FileAudioSink(AudioSink):
    """Engine that plays one file at a time and emits ``COMPLETED`` at its end."""

    @abstractmethod
    async def play_file(self, path: Path, position_ms: int = 0) -> None: ...


__all__ = [
    "AudioSink",
    "FileAudioSink",
    "PlaylistAudioSink",
    "SinkEvent",
    "SinkEventKind",
    "SinkListener",
]
