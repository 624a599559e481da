"""Fetch chunk audio ahead of playback.

Two buffering strategies, picked by what the audio sink can do:

- :class:`StreamingFetchPipeline` appends in-memory audio to a
  :class:`~readaloud.audio.sink.PlaylistAudioSink` and tops the playlist up in
  the background as the playing index advances.
- :class:`PreloadFetchPipeline` writes each chunk to a temp file and keeps a
  small queue of ready files for a :class:`~readaloud.audio.sink.FileAudioSink`.

Fetches are strictly sequential within a session: one busy flag per pipeline,
chunks always in increasing offset order. Each pipeline belongs to exactly one
playback session; ``close()`` makes every in-flight loop unwind without further
requests and removes anything written to disk.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Deque, Literal, Optional, Sequence

from ..audio.probe import probe_duration_ms
from ..audio.sink import FileAudioSink, PlaylistAudioSink
from ..tts.errors import DecodeError
from ..tts.retry import FetchOutcome, RetryCoordinator, RetryStatus
from .chunker import TextChunk

logger = logging.getLogger(__name__)

REFETCH_THRESHOLD = 1

DurationProbe = Callable[[bytes], Awaitable[int]]
BufferingCallback = Callable[[bool, Optional[int]], None]
ChunkCallback = Callable[[int], None]
ErrorCallback = Callable[[str], Awaitable[None]]


class FetchPipeline:
    """State shared by both buffering strategies."""

    def __init__(
        self,
        chunks: Sequence[TextChunk],
        start_index: int,
        coordinator: RetryCoordinator,
        *,
        prefetch_count: int = 2,
        probe: DurationProbe = probe_duration_ms,
        on_buffering: Optional[BufferingCallback] = None,
        on_fetched: Optional[ChunkCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if not 0 <= start_index < len(chunks):
            raise IndexError(f"start index {start_index} outside 0..{len(chunks) - 1}")
        self.chunks = chunks
        self.start_index = start_index
        self.cursor_to_fetch = start_index
        self.last_failure: Optional[RetryStatus] = None
        self._coordinator = coordinator
        self._prefetch_count = max(1, prefetch_count)
        self._probe = probe
        self._on_buffering = on_buffering
        self._on_fetched = on_fetched
        self._on_error = on_error
        self._busy = False
        self._alive = True
        self._tasks: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def prefetch_count(self) -> int:
        return self._prefetch_count

    @property
    def has_more(self) -> bool:
        return self.cursor_to_fetch < len(self.chunks)

    def is_alive(self) -> bool:
        return self._alive

    async def _fetch(self, index: int) -> FetchOutcome:
        chunk = self.chunks[index]
        return await self._coordinator.run(chunk.text, index + 1, is_alive=self.is_alive)

    async def _measure(self, index: int, audio: bytes) -> None:
        chunk = self.chunks[index]
        try:
            chunk.duration_millis = await self._probe(audio)
        except DecodeError as exc:
            chunk.duration_millis = None
            logger.warning("No duration for chunk %d, highlight disabled: %s", index + 1, exc)
            await self._report_error(f"Error getting duration for chunk {index + 1}: {exc}")

    async def _report_error(self, message: str) -> None:
        if self._on_error is not None:
            await self._on_error(message)

    async def _report_failure(self, index: int, status: RetryStatus) -> None:
        await self._report_error(f"Chunk {index + 1} fetch failed, status: {status.value}")

    def _spawn(self, coro: Awaitable[object], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background fetch %s failed", task.get_name(), exc_info=exc)

    def _buffering(self, active: bool) -> None:
        if self._on_buffering is not None:
            next_index = self.cursor_to_fetch if self.has_more else None
            self._on_buffering(active, next_index)

    async def wait_idle(self) -> None:
        """Wait until no background fetch is running."""
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        self._alive = False
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class StreamingFetchPipeline(FetchPipeline):
    """Append fetched audio to a live playlist."""

    def __init__(self, sink: PlaylistAudioSink, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sink = sink

    @property
    def halted(self) -> bool:
        """A chunk ended without audio; nothing more is fetched this session."""
        return self.last_failure is not None

    @property
    def exhausted(self) -> bool:
        return self.halted or not self.has_more

    async def fetch_and_append(self, count: int) -> bool:
        """Fetch up to ``count`` chunks in order and append them to the sink.

        Stops at the first chunk that cannot be fetched, without skipping it.
        Returns True when at least one chunk was appended; a call made while
        another fetch is running is suppressed and returns False.
        """
        if self._busy:
            logger.debug("fetch_and_append suppressed, fetch already in flight")
            return False
        self._busy = True
        appended = 0
        try:
            for _ in range(count):
                if not self._alive or not self.has_more or self.halted:
                    break
                index = self.cursor_to_fetch
                outcome = await self._fetch(index)
                if not self._alive:
                    break
                if not outcome.ok:
                    self.last_failure = outcome.status
                    logger.info(
                        "Chunk %d fetch ended with %s, stopping", index + 1, outcome.status.value
                    )
                    await self._report_failure(index, outcome.status)
                    break
                await self._measure(index, outcome.audio)
                if not self._alive:
                    break
                await self._sink.append(outcome.audio)
                self.cursor_to_fetch = index + 1
                appended += 1
                if self._on_fetched is not None:
                    self._on_fetched(index)
        finally:
            self._busy = False
        return appended > 0

    async def fetch_more(self) -> bool:
        self._buffering(True)
        try:
            return await self.fetch_and_append(self._prefetch_count)
        finally:
            if self._alive:
                self._buffering(False)

    def on_index_changed(self, playlist_index: int) -> bool:
        """Top up the playlist when the engine gets close to its end.

        Returns True when a background fetch was started.
        """
        remaining = self._sink.playlist_length - 1 - playlist_index
        if (
            remaining < REFETCH_THRESHOLD
            and not self._busy
            and self._alive
            and self.has_more
            and not self.halted
        ):
            self._spawn(self.fetch_more(), f"refetch-from-{self.cursor_to_fetch}")
            return True
        return False


@dataclass(frozen=True)
class PreloadedChunk:
    chunk_index: int
    path: Path
    text: str


class PreloadFetchPipeline(FetchPipeline):
    """Keep up to ``prefetch_count`` chunks ready as temp files.

    ``failure_policy`` decides what a chunk that cannot be fetched does to the
    queue: ``"skip"`` logs it and moves on to the following chunk (playback
    will have a gap), ``"fail"`` stops fetching and marks the pipeline failed.
    """

    def __init__(
        self,
        sink: FileAudioSink,
        *args,
        temp_root: Path,
        failure_policy: Literal["skip", "fail"] = "skip",
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._sink = sink
        self._temp_root = temp_root
        self._failure_policy = failure_policy
        self._session_dir: Optional[Path] = None
        self._queue: Deque[PreloadedChunk] = deque()
        self._preload_task: Optional[asyncio.Task] = None
        self.failed = False

    @property
    def queue(self) -> list[PreloadedChunk]:
        return list(self._queue)

    @property
    def session_dir(self) -> Optional[Path]:
        return self._session_dir

    @property
    def exhausted(self) -> bool:
        return self.failed or (not self.has_more and not self._queue)

    async def _ensure_session_dir(self) -> Path:
        if self._session_dir is None:
            def _make() -> Path:
                self._temp_root.mkdir(parents=True, exist_ok=True)
                return Path(tempfile.mkdtemp(prefix="session-", dir=self._temp_root))

            self._session_dir = await asyncio.to_thread(_make)
        return self._session_dir

    async def _write_chunk(self, index: int, audio: bytes) -> PreloadedChunk:
        directory = await self._ensure_session_dir()
        path = directory / f"chunk_{index:05d}.mp3"
        await asyncio.to_thread(path.write_bytes, audio)
        return PreloadedChunk(chunk_index=index, path=path, text=self.chunks[index].text)

    async def _fetch_to_file(self, index: int) -> Optional[PreloadedChunk]:
        """Fetch chunk ``index``; None when it produced no audio."""
        outcome = await self._fetch(index)
        if not self._alive:
            return None
        if not outcome.ok:
            self.last_failure = outcome.status
            if self._failure_policy == "fail":
                self.failed = True
                logger.warning(
                    "Chunk %d could not be fetched (%s), stopping session buffer",
                    index + 1,
                    outcome.status.value,
                )
            else:
                logger.warning(
                    "Chunk %d could not be fetched (%s), skipping it",
                    index + 1,
                    outcome.status.value,
                )
            await self._report_failure(index, outcome.status)
            return None
        await self._measure(index, outcome.audio)
        if not self._alive:
            return None
        item = await self._write_chunk(index, outcome.audio)
        if self._on_fetched is not None:
            self._on_fetched(index)
        return item

    async def preload(self) -> int:
        """Fill the queue up to ``prefetch_count``; return how many files were added."""
        if self._busy:
            logger.debug("preload suppressed, fetch already in flight")
            return 0
        self._busy = True
        added = 0
        try:
            while (
                self._alive
                and not self.failed
                and self.has_more
                and len(self._queue) < self._prefetch_count
            ):
                index = self.cursor_to_fetch
                self.cursor_to_fetch = index + 1
                item = await self._fetch_to_file(index)
                if not self._alive:
                    if item is not None:
                        await asyncio.to_thread(item.path.unlink, missing_ok=True)
                    break
                if item is not None:
                    self._queue.append(item)
                    added += 1
        finally:
            self._busy = False
        return added

    def schedule_preload(self) -> Optional[asyncio.Task]:
        """Start a background :meth:`preload` unless one is already running."""
        if self._busy or not self._alive or self.failed or not self.has_more:
            return None
        if self._preload_task is not None and not self._preload_task.done():
            return None
        if len(self._queue) >= self._prefetch_count:
            return None
        self._preload_task = self._spawn(
            self._background_preload(), f"preload-from-{self.cursor_to_fetch}"
        )
        return self._preload_task

    async def _background_preload(self) -> int:
        self._buffering(True)
        try:
            return await self.preload()
        finally:
            if self._alive:
                self._buffering(False)

    async def next_for_playback(self) -> Optional[PreloadedChunk]:
        """Dequeue the next ready file, fetching directly when the queue is empty."""
        if self._preload_task is not None and not self._preload_task.done() and not self._queue:
            await asyncio.gather(self._preload_task, return_exceptions=True)
        if self._queue:
            return self._queue.popleft()
        if self._busy:
            return None

        self._busy = True
        try:
            while self._alive and not self.failed and self.has_more:
                index = self.cursor_to_fetch
                self.cursor_to_fetch = index + 1
                logger.info("Queue empty, fetching chunk %d directly", index + 1)
                item = await self._fetch_to_file(index)
                if item is not None:
                    if not self._alive:
                        await asyncio.to_thread(item.path.unlink, missing_ok=True)
                        return None
                    return item
        finally:
            self._busy = False
        return None

    async def release(self, item: PreloadedChunk) -> None:
        """Delete a file that has finished playing."""
        await asyncio.to_thread(item.path.unlink, missing_ok=True)

    async def close(self) -> None:
        await super().close()
        self._queue.clear()
        if self._session_dir is not None:
            directory = self._session_dir
            self._session_dir = None
            await asyncio.to_thread(shutil.rmtree, directory, True)
            logger.debug("Removed session audio directory %s", directory)


__all__ = [
    "FetchPipeline",
    "PreloadFetchPipeline",
    "PreloadedChunk",
    "REFETCH_THRESHOLD",
    "StreamingFetchPipeline",
]
