"""Orchestrates chunking, fetching, playback and progress for one reader.

The controller owns at most one :class:`PlaybackSession`. Every transition
that replaces the session (play, jump, stop, completion) runs under a single
lock, and a new session only starts once the previous one has been torn down:
its tasks cancelled, its pending retry prompts answered "no", its temp files
removed and the sink stopped.

Presentation clients never get called back; they subscribe to the
:class:`PlaybackEventBus` and read :meth:`PlaybackController.snapshot`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..audio.probe import probe_duration_ms
from ..audio.sink import AudioSink, FileAudioSink, PlaylistAudioSink, SinkEvent, SinkEventKind
from ..schemas.playback import PendingPrompt, PlaybackSnapshot
from ..schemas.reader_settings import Credentials, ReaderSettings, clamp_playback_speed
from ..services.bookmarks import BookmarkStore
from ..services.document import DocumentStore
from ..services.error_log import ErrorLogStore
from ..services.progress import ProgressPersistence, ResumeOffer
from ..tts.client import TTSFetchClient, ensure_credentials
from ..tts.retry import RETRY_DELAY_SECONDS, RetryCoordinator, RetryPrompt
from .chunker import TextChunk, split_text
from .events import PlaybackEventBus, PlaybackEventType
from .pipeline import PreloadedChunk, PreloadFetchPipeline, StreamingFetchPipeline
from .session import Pipeline, PlaybackSession, SessionState

logger = logging.getLogger(__name__)

FETCH_FAILED_MESSAGE = "Failed to fetch audio segments."


@dataclass(frozen=True)
class LoadResult:
    chunks: List[TextChunk]
    resume_offer: Optional[ResumeOffer]


class PlaybackController:
    """Single entry point for everything the presentation layer can ask for."""

    def __init__(
        self,
        *,
        settings: ReaderSettings,
        credentials: Callable[[], Credentials],
        sink: AudioSink,
        progress: ProgressPersistence,
        temp_dir: Path,
        client: Optional[TTSFetchClient] = None,
        bookmarks: Optional[BookmarkStore] = None,
        error_log: Optional[ErrorLogStore] = None,
        documents: Optional[DocumentStore] = None,
        events: Optional[PlaybackEventBus] = None,
        request_timeout: Optional[float] = None,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        probe: Callable[[bytes], Awaitable[int]] = probe_duration_ms,
    ) -> None:
        if not isinstance(sink, (PlaylistAudioSink, FileAudioSink)):
            raise TypeError(f"Unsupported audio sink: {type(sink).__name__}")
        self._settings = settings
        self._credentials = credentials
        self._sink = sink
        self._progress = progress
        self._temp_dir = temp_dir
        self._bookmarks = bookmarks
        self._error_log = error_log
        self._documents = documents
        self.events = events or PlaybackEventBus()
        self._request_timeout = request_timeout
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._probe = probe

        self.proxy_warning: Optional[str] = None
        self._owns_client = client is None
        if client is None:
            client, self.proxy_warning = TTSFetchClient.for_settings(
                settings, timeout=request_timeout
            )
        self._client = client
        self._retired_clients: List[TTSFetchClient] = []

        self._text = ""
        self._chunks: List[TextChunk] = []
        self._resume_offer: Optional[ResumeOffer] = None
        self._session: Optional[PlaybackSession] = None
        self._transition_lock = asyncio.Lock()
        self._prompts: Dict[str, Tuple[RetryPrompt, asyncio.Future[bool]]] = {}
        self._remove_listener = sink.add_listener(self._on_sink_event)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def settings(self) -> ReaderSettings:
        return self._settings

    @property
    def text(self) -> str:
        return self._text

    @property
    def chunks(self) -> List[TextChunk]:
        return self._chunks

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def resume_offer(self) -> Optional[ResumeOffer]:
        return self._resume_offer

    def snapshot(self) -> PlaybackSnapshot:
        session = self._session
        prompts = [
            PendingPrompt(prompt_id=prompt_id, chunk_number=prompt.chunk_number, message=prompt.message)
            for prompt_id, (prompt, future) in self._prompts.items()
            if not future.done()
        ]
        if session is None:
            return PlaybackSnapshot(
                state=SessionState.IDLE.value,
                chunk_count=len(self._chunks),
                playback_speed=self._settings.playback_speed,
                pending_prompts=prompts,
            )
        return PlaybackSnapshot(
            state=session.state.value,
            session_id=session.session_id,
            chunk_count=len(session.chunks),
            start_index=session.start_index,
            currently_playing_index=session.currently_playing_index,
            highlighted_char_index=session.highlighted_char_index,
            playback_speed=self._settings.playback_speed,
            pending_prompts=prompts,
            last_error=session.last_error,
        )

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------
    async def load_text(self, text: str, *, persist: bool = True) -> LoadResult:
        """Chunk ``text`` and look for a saved position that belongs to it."""
        if text != self._text:
            await self.stop()
        self._text = text
        self._chunks = split_text(text, self._settings.max_chars_per_request)
        if persist and self._documents is not None:
            await self._documents.save(text)

        self._resume_offer = await self._progress.offer(text)
        if self._resume_offer is not None:
            self.events.publish(
                PlaybackEventType.RESUME_OFFER,
                chunk_start_offset=self._resume_offer.chunk_start_offset,
                position_ms=self._resume_offer.position_ms,
            )
        logger.info("Loaded text: %d chars, %d chunks", len(text), len(self._chunks))
        return LoadResult(chunks=list(self._chunks), resume_offer=self._resume_offer)

    async def restore_document(self) -> Optional[LoadResult]:
        """Reload the text saved by a previous run, if any."""
        if self._documents is None:
            return None
        text = await self._documents.load()
        if not text:
            return None
        return await self.load_text(text, persist=False)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def play(
        self,
        from_chunk_index: int = 0,
        resume_position_ms: Optional[int] = None,
        *,
        wait: bool = True,
    ) -> bool:
        """Start a new session at ``from_chunk_index``.

        Raises ``ConfigurationError`` (nothing fetched) when the provider
        lacks credentials, ``ValueError`` when there is no text and
        ``IndexError`` for an index outside the chunk list. With ``wait``,
        returns whether audio actually started.
        """
        async with self._transition_lock:
            await self._teardown_locked(SessionState.STOPPED)

            if not self._chunks:
                raise ValueError("No text to read.")
            if not 0 <= from_chunk_index < len(self._chunks):
                raise IndexError(f"Invalid starting chunk index: {from_chunk_index}")
            credentials = self._credentials()
            ensure_credentials(self._settings, credentials)

            session = PlaybackSession(
                self._chunks,
                from_chunk_index,
                self._build_pipeline(from_chunk_index, credentials),
            )
            self._session = session
            self._set_state(session, SessionState.LOADING)
            session.loading_task = self._spawn(
                session,
                self._start_session(session, resume_position_ms),
                f"load-{session.session_id}",
            )
            task = session.loading_task

        if not wait:
            return True
        await asyncio.wait({task})
        if task.cancelled():
            return False
        return bool(task.result()) and self._session is session

    async def jump_to_chunk(self, index: int, *, wait: bool = True) -> bool:
        return await self.play(index, wait=wait)

    async def speak_from_start(self, *, wait: bool = True) -> bool:
        """Restart from the first chunk and forget the saved position."""
        await self.stop()
        await self._progress.clear()
        self._resume_offer = None
        return await self.play(0, wait=wait)

    async def resume_saved(self, *, wait: bool = True) -> bool:
        """Accept the resume offer for the loaded text.

        The saved position is cleared before playback starts. When the saved
        chunk offset no longer matches any chunk, reading restarts from the
        beginning.
        """
        offer = self._resume_offer or await self._progress.offer(self._text)
        if offer is None:
            return False
        await self.stop()
        self._resume_offer = None
        target = ProgressPersistence.resolve(offer, self._chunks)
        if target is None:
            logger.info(
                "Saved offset %d matches no chunk, starting from the beginning",
                offer.chunk_start_offset,
            )
            self.events.publish(
                PlaybackEventType.NOTICE,
                message="Saved position no longer matches the text, starting from the beginning.",
            )
            return await self.speak_from_start(wait=wait)
        await self._progress.clear()
        return await self.play(target.chunk_index, target.position_ms, wait=wait)

    async def pause(self) -> bool:
        session = self._session
        if session is None or session.state != SessionState.PLAYING:
            return False
        self._set_state(session, SessionState.PAUSED)
        await self._sink.pause()
        if session is not self._session:
            return False
        await self._save_current(session)
        return True

    async def resume(self) -> bool:
        session = self._session
        if session is None or session.state != SessionState.PAUSED:
            return False
        self._set_state(session, SessionState.PLAYING)
        await self._sink.play()
        return session is self._session

    async def stop(self) -> bool:
        async with self._transition_lock:
            return await self._teardown_locked(SessionState.STOPPED)

    async def on_background(self) -> None:
        """The client went to the background; make sure progress is on disk."""
        session = self._session
        if session is not None:
            await self._save_current(session)

    def resolve_retry_prompt(self, prompt_id: str, retry: bool) -> None:
        """Answer a pending retry prompt. Raises KeyError for unknown ids."""
        entry = self._prompts.get(prompt_id)
        if entry is None or entry[1].done():
            raise KeyError(f"Unknown retry prompt: {prompt_id}")
        entry[1].set_result(retry)

    async def set_playback_speed(self, speed: float) -> float:
        clamped = clamp_playback_speed(speed)
        self._settings = self._settings.model_copy(update={"playback_speed": clamped})
        await self._sink.set_speed(clamped)
        logger.info("Playback speed set to %.2f", clamped)
        return clamped

    async def apply_settings(self, settings: ReaderSettings) -> Optional[str]:
        """Swap in new settings. Returns a proxy warning, if any.

        A running session keeps the settings it started with, except when the
        chunk size changes: then it is stopped and the text re-chunked.
        """
        previous = self._settings
        self._settings = settings
        if settings.max_chars_per_request != previous.max_chars_per_request and self._text:
            await self.stop()
            self._chunks = split_text(self._text, settings.max_chars_per_request)
        if settings.playback_speed != previous.playback_speed:
            await self._sink.set_speed(settings.playback_speed)

        if self._owns_client:
            client, warning = TTSFetchClient.for_settings(settings, timeout=self._request_timeout)
            if client.proxy != self._client.proxy:
                old_client = self._client
                self._client = client
                if self._session is not None:
                    # The running session fetches through the old client until it ends
                    self._retired_clients.append(old_client)
                else:
                    await old_client.aclose()
            self.proxy_warning = warning
            if warning:
                self.events.publish(PlaybackEventType.NOTICE, message=warning)
        return self.proxy_warning

    async def shutdown(self) -> None:
        await self.stop()
        for _, future in self._prompts.values():
            if not future.done():
                future.set_result(False)
        self._remove_listener()
        await self._sink.dispose()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def _build_pipeline(self, start_index: int, credentials: Credentials) -> Pipeline:
        settings = self._settings
        client = self._client

        async def _fetch(text: str) -> bytes:
            return await client.synthesize(text, settings, credentials)

        coordinator = RetryCoordinator(
            _fetch,
            decide=self._ask_user,
            notify=self._notify,
            error_log=self._error_log,
            retry_delay=self._retry_delay,
            sleep=self._sleep,
        )
        common = dict(
            prefetch_count=settings.prefetch_chunk_count,
            probe=self._probe,
            on_buffering=self._on_buffering,
            on_fetched=self._on_fetched,
            on_error=self._log_error,
        )
        if isinstance(self._sink, PlaylistAudioSink):
            return StreamingFetchPipeline(
                self._sink, self._chunks, start_index, coordinator, **common
            )
        return PreloadFetchPipeline(
            self._sink,
            self._chunks,
            start_index,
            coordinator,
            temp_root=self._temp_dir,
            failure_policy=settings.preload_failure_policy,
            **common,
        )

    async def _start_session(
        self, session: PlaybackSession, resume_position_ms: Optional[int]
    ) -> bool:
        session.resume_position_ms = resume_position_ms or 0
        try:
            if session.streaming:
                started = await self._start_streaming(session, resume_position_ms)
            else:
                started = await self._start_preloaded(session, resume_position_ms)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Could not start playback")
            await self._fail_session(session, f"Error setting audio source or playing: {exc}")
            return False
        if not started:
            if session.alive:
                await self._fail_session(session, FETCH_FAILED_MESSAGE)
            return False
        if session.alive and session.state == SessionState.LOADING:
            self._set_state(session, SessionState.PLAYING)
        return session.alive

    async def _start_streaming(
        self, session: PlaybackSession, resume_position_ms: Optional[int]
    ) -> bool:
        sink = self._sink
        assert isinstance(sink, PlaylistAudioSink)
        pipeline = session.pipeline
        assert isinstance(pipeline, StreamingFetchPipeline)

        await sink.reset_playlist()
        await sink.set_speed(self._settings.playback_speed)
        fetched = await pipeline.fetch_and_append(pipeline.prefetch_count)
        if not session.alive or not fetched or sink.playlist_length == 0:
            return False
        if resume_position_ms:
            await sink.seek(resume_position_ms, index=0)
        await sink.play()
        return session.alive

    async def _start_preloaded(
        self, session: PlaybackSession, resume_position_ms: Optional[int]
    ) -> bool:
        pipeline = session.pipeline
        assert isinstance(pipeline, PreloadFetchPipeline)

        await self._sink.set_speed(self._settings.playback_speed)
        await pipeline.preload()
        if not session.alive:
            return False
        item = await pipeline.next_for_playback()
        if not session.alive or item is None:
            return False
        await self._play_file(session, item, resume_position_ms or 0)
        pipeline.schedule_preload()
        return session.alive

    async def _play_file(self, session: PlaybackSession, item: PreloadedChunk, position_ms: int) -> None:
        sink = self._sink
        assert isinstance(sink, FileAudioSink)
        session.current_file = item
        self._enter_chunk(session, item.chunk_index)
        await sink.play_file(item.path, position_ms)

    def _enter_chunk(self, session: PlaybackSession, chunk_index: int) -> None:
        position_ms, session.resume_position_ms = session.resume_position_ms, 0
        session.set_position(chunk_index, -1)
        chunk = session.chunks[chunk_index]
        self.events.publish(
            PlaybackEventType.CHUNK,
            status="playing",
            chunk_index=chunk_index,
            start_offset=chunk.start_offset,
            end_offset=chunk.end_offset,
        )
        self._spawn(
            session,
            self._save_progress(session, chunk_index, position_ms),
            f"save-{chunk_index}",
        )

    async def _fail_session(self, session: PlaybackSession, message: str) -> None:
        """Terminal error while loading: back to idle with the error surfaced."""
        session.last_error = message
        self.events.publish(PlaybackEventType.ERROR, message=message)
        await self._log_error(message)
        async with self._transition_lock:
            if self._session is session:
                await self._teardown_locked(None, save=False)

    async def _complete_session(self, session: PlaybackSession) -> None:
        async with self._transition_lock:
            if self._session is not session:
                return
            if session.last_error:
                self.events.publish(PlaybackEventType.ERROR, message=session.last_error)
                await self._log_error(session.last_error)
            chunk = session.current_chunk
            if chunk is not None:
                await self._save_progress(
                    session, session.currently_playing_index, chunk.duration_millis or 0
                )
            self._set_state(session, SessionState.COMPLETED)
            await self._teardown_locked(None, save=False)
            logger.info("Playback session %s completed", session.session_id)

    async def _teardown_locked(
        self, final_state: Optional[SessionState], *, save: bool = True
    ) -> bool:
        """Tear down the active session. Caller holds the transition lock."""
        session = self._session
        if session is None:
            return False
        if save:
            await self._save_current(session)
        session.alive = False
        self._session = None

        for _, future in self._prompts.values():
            if not future.done():
                future.set_result(False)

        current = asyncio.current_task()
        pending = [task for task in session.tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await session.pipeline.close()
        await self._close_retired_clients()
        await self._sink.stop()
        if isinstance(self._sink, PlaylistAudioSink):
            await self._sink.reset_playlist()

        if final_state is not None:
            session.state = final_state
            self.events.publish(
                PlaybackEventType.STATE,
                state=final_state.value,
                session_id=session.session_id,
            )
        session.set_position(-1, -1)
        session.state = SessionState.IDLE
        self.events.publish(
            PlaybackEventType.STATE, state=SessionState.IDLE.value, session_id=session.session_id
        )
        logger.info("Playback session %s torn down", session.session_id)
        return True

    # ------------------------------------------------------------------
    # Sink events
    # ------------------------------------------------------------------
    def _on_sink_event(self, event: SinkEvent) -> None:
        session = self._session
        if session is None or not session.alive:
            return
        if event.kind == SinkEventKind.INDEX_CHANGED and session.streaming:
            self._on_playlist_index(session, event.index)
        elif event.kind == SinkEventKind.POSITION:
            self._on_position(session, event.position_ms or 0)
        elif event.kind == SinkEventKind.PLAYER_STATE:
            if event.playing is False and session.state == SessionState.PLAYING:
                # Engine paused on its own (device change, focus loss)
                self._set_state(session, SessionState.PAUSED)
                self._spawn(session, self._save_current(session), "save-on-pause")
        elif event.kind == SinkEventKind.COMPLETED:
            if session.streaming:
                self._spawn(session, self._on_playlist_end(session), "playlist-end")
            else:
                self._spawn(session, self._on_file_end(session), "file-end")

    def _on_playlist_index(self, session: PlaybackSession, playlist_index: Optional[int]) -> None:
        if playlist_index is None:
            return
        chunk_index = session.start_index + playlist_index
        if chunk_index >= len(session.chunks) or chunk_index == session.currently_playing_index:
            return
        self._enter_chunk(session, chunk_index)
        pipeline = session.pipeline
        assert isinstance(pipeline, StreamingFetchPipeline)
        pipeline.on_index_changed(playlist_index)

    def _on_position(self, session: PlaybackSession, position_ms: int) -> None:
        chunk = session.current_chunk
        if chunk is None:
            return
        index = session.tracker.update(chunk, position_ms)
        if index is None:
            return
        session.highlighted_char_index = index
        self.events.publish(
            PlaybackEventType.HIGHLIGHT,
            chunk_index=session.currently_playing_index,
            char_index=index,
        )

    async def _on_playlist_end(self, session: PlaybackSession) -> None:
        """The engine ran out of buffered audio."""
        sink = self._sink
        assert isinstance(sink, PlaylistAudioSink)
        pipeline = session.pipeline
        assert isinstance(pipeline, StreamingFetchPipeline)

        next_playlist_index = session.currently_playing_index - session.start_index + 1
        await pipeline.wait_idle()
        if not session.alive:
            return
        if next_playlist_index >= sink.playlist_length and not pipeline.exhausted:
            await pipeline.fetch_more()
            if not session.alive:
                return
        if next_playlist_index < sink.playlist_length:
            await sink.seek(0, index=next_playlist_index)
            await sink.play()
            return
        if pipeline.halted:
            session.last_error = f"Processing stopped for chunk {pipeline.cursor_to_fetch + 1}."
        await self._complete_session(session)

    async def _on_file_end(self, session: PlaybackSession) -> None:
        pipeline = session.pipeline
        assert isinstance(pipeline, PreloadFetchPipeline)
        finished = session.current_file
        session.current_file = None
        if finished is not None:
            await pipeline.release(finished)
        item = await pipeline.next_for_playback()
        if not session.alive:
            if item is not None:
                await pipeline.release(item)
            return
        if item is None:
            if pipeline.failed:
                session.last_error = FETCH_FAILED_MESSAGE
            await self._complete_session(session)
            return
        await self._play_file(session, item, 0)
        pipeline.schedule_preload()

    # ------------------------------------------------------------------
    # Collaborators of the fetch pipeline
    # ------------------------------------------------------------------
    async def _ask_user(self, prompt: RetryPrompt) -> bool:
        prompt_id = uuid.uuid4().hex[:8]
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._prompts[prompt_id] = (prompt, future)
        self.events.publish(
            PlaybackEventType.RETRY_PROMPT,
            prompt_id=prompt_id,
            chunk_number=prompt.chunk_number,
            attempts=prompt.attempts,
            message=prompt.message,
        )
        try:
            return await future
        finally:
            self._prompts.pop(prompt_id, None)

    async def _log_error(self, message: str) -> None:
        if self._error_log is not None:
            await self._error_log.add(message)

    def _notify(self, message: str) -> None:
        self.events.publish(PlaybackEventType.NOTICE, message=message)

    def _on_buffering(self, active: bool, next_chunk_index: Optional[int]) -> None:
        self.events.publish(
            PlaybackEventType.BUFFERING,
            active=active,
            next_chunk_index=next_chunk_index,
        )

    def _on_fetched(self, chunk_index: int) -> None:
        chunk = self._chunks[chunk_index] if chunk_index < len(self._chunks) else None
        self.events.publish(
            PlaybackEventType.CHUNK,
            status="ready",
            chunk_index=chunk_index,
            duration_millis=chunk.duration_millis if chunk else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_state(self, session: PlaybackSession, state: SessionState) -> None:
        session.state = state
        self.events.publish(
            PlaybackEventType.STATE,
            state=state.value,
            session_id=session.session_id,
            chunk_index=session.currently_playing_index,
        )

    def _spawn(self, session: PlaybackSession, coro: Awaitable[object], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(f"{name}-{session.session_id}")
        session.tasks.add(task)
        task.add_done_callback(self._task_done(session))
        return task

    @staticmethod
    def _task_done(session: PlaybackSession) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            session.tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Playback task %s failed", task.get_name(), exc_info=exc)

        return _done

    async def _close_retired_clients(self) -> None:
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            await client.aclose()

    async def _save_current(self, session: PlaybackSession) -> None:
        if session.currently_playing_index < 0:
            return
        await self._save_progress(session, session.currently_playing_index, self._sink.position_ms)

    async def _save_progress(
        self, session: PlaybackSession, chunk_index: int, position_ms: int
    ) -> None:
        if not self._text or not 0 <= chunk_index < len(session.chunks):
            return
        offset = session.chunks[chunk_index].start_offset
        await self._progress.save(self._text, offset, position_ms)
        if self._settings.auto_bookmark and self._bookmarks is not None:
            await self._bookmarks.add(offset)


__all__ = ["FETCH_FAILED_MESSAGE", "LoadResult", "PlaybackController"]
