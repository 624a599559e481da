"""Notification channel between the playback core and presentation clients.

The controller publishes; every subscriber (one per open SSE stream, or a
test) owns a bounded queue. A slow subscriber loses its oldest events rather
than stalling playback.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class PlaybackEventType(str, Enum):
    STATE = "state"
    CHUNK = "chunk"
    HIGHLIGHT = "highlight"
    NOTICE = "notice"
    ERROR = "error"
    RETRY_PROMPT = "retry_prompt"
    RESUME_OFFER = "resume_offer"
    BUFFERING = "buffering"


@dataclass(frozen=True)
class PlaybackEvent:
    type: PlaybackEventType
    payload: Dict[str, Any] = field(default_factory=dict)

    def as_sse(self) -> Dict[str, str]:
        return {
            "event": self.type.value,
            "data": json.dumps(self.payload, ensure_ascii=False),
        }


class PlaybackEventBus:
    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue[PlaybackEvent]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[PlaybackEvent]:
        queue: asyncio.Queue[PlaybackEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        logger.debug("Playback event subscriber added (%d total)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[PlaybackEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            logger.debug(
                "Playback event subscriber removed (%d left)", len(self._subscribers)
            )

    def publish(self, event_type: PlaybackEventType, **payload: Any) -> PlaybackEvent:
        event = PlaybackEvent(event_type, payload)
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)
        return event


__all__ = [
    "PlaybackEvent",
    "PlaybackEventBus",
    "PlaybackEventType",
]
