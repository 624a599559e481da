"""End-to-end tests for the playback controller against fake engines."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from fakes import FakeFileSink, FakePlaylistSink, StubClient, fixed_probe, no_sleep, sample_text
from readaloud.playback.controller import FETCH_FAILED_MESSAGE, PlaybackController
from readaloud.playback.events import PlaybackEvent, PlaybackEventType
from readaloud.playback.session import PlaybackSession
from readaloud.schemas.reader_settings import Credentials, ReaderSettings
from readaloud.services.bookmarks import BookmarkStore
from readaloud.services.error_log import ErrorLogStore
from readaloud.services.progress import ProgressPersistence, ProgressStore, text_content_hash
from readaloud.tts.client import TTSFetchClient
from readaloud.tts.errors import ConfigurationError, DecodeError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


TEXT = sample_text(700)


class Harness:
    def __init__(
        self,
        tmp_path,
        sink,
        client: StubClient,
        credentials: Credentials,
        probe=fixed_probe,
        **settings,
    ):
        self.sink = sink
        self.client = client
        self.store = ProgressStore(tmp_path / "progress.json")
        self.bookmarks = BookmarkStore(tmp_path / "bookmarks.json")
        self.error_log = ErrorLogStore(tmp_path / "errors.json")
        self.controller = PlaybackController(
            settings=ReaderSettings(
                max_chars_per_request=300, prefetch_chunk_count=2, **settings
            ),
            credentials=lambda: credentials,
            sink=sink,
            progress=ProgressPersistence(self.store),
            temp_dir=tmp_path / "audio",
            client=client,
            bookmarks=self.bookmarks,
            error_log=self.error_log,
            sleep=no_sleep,
            probe=probe,
        )
        self.events = self.controller.events.subscribe()

    def drain_events(self) -> List[PlaybackEvent]:
        events = []
        while not self.events.empty():
            events.append(self.events.get_nowait())
        return events

    async def next_event(self, event_type: PlaybackEventType) -> PlaybackEvent:
        while True:
            event = await asyncio.wait_for(self.events.get(), timeout=2)
            if event.type == event_type:
                return event


def _harness(
    tmp_path, sink=None, client=None, credentials=None, probe=fixed_probe, **settings
) -> Harness:
    return Harness(
        tmp_path,
        sink if sink is not None else FakePlaylistSink(),
        client or StubClient(),
        credentials or Credentials(openai_api_key="sk-test"),
        probe,
        **settings,
    )


async def settle(session: PlaybackSession) -> None:
    """Wait for every background task of ``session`` to finish."""
    for _ in range(10):
        await session.pipeline.wait_idle()
        pending = [task for task in session.tasks if not task.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


@pytest.mark.anyio
async def test_streaming_session_plays_to_completion(tmp_path) -> None:
    h = _harness(tmp_path)
    controller = h.controller
    result = await controller.load_text(TEXT)
    assert [chunk.start_offset for chunk in result.chunks] == [0, 300, 600]
    assert result.resume_offer is None

    assert await controller.play(0)
    session = controller.session
    assert session is not None

    # Two chunks buffered before the first sound
    assert h.client.calls == [TEXT[:300], TEXT[300:600]]
    assert h.sink.playing
    snapshot = controller.snapshot()
    assert snapshot.state == "playing"
    assert snapshot.currently_playing_index == 0

    h.sink.tick(500)
    assert controller.snapshot().highlighted_char_index == 150

    h.sink.finish_current()
    await settle(session)
    assert controller.snapshot().currently_playing_index == 1
    assert controller.snapshot().highlighted_char_index == -1
    assert h.client.calls[-1] == TEXT[600:]
    assert h.sink.playlist_length == 3

    h.sink.finish_current()
    await settle(session)
    assert controller.snapshot().currently_playing_index == 2

    h.sink.finish_current()
    await settle(session)

    assert controller.session is None
    assert controller.snapshot().state == "idle"
    saved = await h.store.load()
    assert saved is not None
    assert saved.text_hash == text_content_hash(TEXT)
    assert saved.chunk_start_offset == 600
    assert saved.position_ms == 1000
    assert await h.bookmarks.list() == [0, 300, 600]

    states = [
        event.payload["state"]
        for event in h.drain_events()
        if event.type == PlaybackEventType.STATE
    ]
    assert states[-2:] == ["completed", "idle"]


@pytest.mark.anyio
async def test_missing_credentials_fail_before_any_request(tmp_path) -> None:
    h = _harness(tmp_path, credentials=Credentials())
    await h.controller.load_text(TEXT)

    with pytest.raises(ConfigurationError):
        await h.controller.play(0)

    assert h.client.calls == []
    assert h.controller.session is None


@pytest.mark.anyio
async def test_play_validates_text_and_index(tmp_path) -> None:
    h = _harness(tmp_path)

    with pytest.raises(ValueError):
        await h.controller.play(0)

    await h.controller.load_text(TEXT)
    with pytest.raises(IndexError):
        await h.controller.play(3)
    assert h.client.calls == []


@pytest.mark.anyio
async def test_pause_and_resume(tmp_path) -> None:
    h = _harness(tmp_path)
    await h.controller.load_text(TEXT)
    await h.controller.play(0)
    await settle(h.controller.session)
    h.sink.tick(400)

    assert await h.controller.pause()
    assert h.controller.snapshot().state == "paused"
    assert not h.sink.playing
    saved = await h.store.load()
    assert saved is not None and saved.position_ms == 400

    assert not await h.controller.pause()
    assert await h.controller.resume()
    assert h.controller.snapshot().state == "playing"
    assert h.sink.playing


@pytest.mark.anyio
async def test_stop_saves_position_and_goes_idle(tmp_path) -> None:
    h = _harness(tmp_path)
    await h.controller.load_text(TEXT)
    await h.controller.play(1)
    await settle(h.controller.session)
    h.sink.tick(250)

    assert await h.controller.stop()

    assert h.controller.session is None
    assert h.sink.playlist_length == 0
    saved = await h.store.load()
    assert saved is not None
    assert (saved.chunk_start_offset, saved.position_ms) == (300, 250)
    assert not await h.controller.stop()


@pytest.mark.anyio
async def test_file_session_jump_tears_down_previous_session(tmp_path) -> None:
    sink = FakeFileSink()
    client = StubClient(block_on_call=2)
    h = _harness(tmp_path, sink=sink, client=client)
    await h.controller.load_text(TEXT)

    assert await h.controller.play(0)
    first = h.controller.session
    assert first is not None
    old_dir = first.pipeline.session_dir
    assert old_dir is not None
    assert sink.played[0][2] == f"audio:{TEXT[:300]}".encode()

    # Background preload of chunk 3 hangs until the session goes away
    await client.blocked.wait()
    assert await h.controller.jump_to_chunk(1)

    assert client.cancelled == 1
    assert not old_dir.exists()
    second = h.controller.session
    assert second is not None and second is not first
    assert not first.alive
    assert sink.played[-1][2] == f"audio:{TEXT[300:600]}".encode()
    assert h.controller.snapshot().currently_playing_index == 1

    new_dir = second.pipeline.session_dir
    await h.controller.stop()
    assert new_dir is not None and not new_dir.exists()


@pytest.mark.anyio
async def test_streaming_jump_cancels_blocked_refetch(tmp_path) -> None:
    client = StubClient(block_on_call=2)
    h = _harness(tmp_path, client=client)
    await h.controller.load_text(TEXT)

    assert await h.controller.play(0)
    first = h.controller.session
    assert first is not None

    # Entering chunk 2 tops the playlist up; that fetch hangs
    h.sink.finish_current()
    await client.blocked.wait()
    assert await h.controller.jump_to_chunk(1)

    assert client.cancelled == 1
    assert not first.alive
    assert not first.pipeline.is_alive()
    second = h.controller.session
    assert second is not None and second is not first
    assert client.calls[-2:] == [TEXT[300:600], TEXT[600:]]
    assert h.sink.items == [f"audio:{TEXT[300:600]}".encode(), f"audio:{TEXT[600:]}".encode()]
    assert h.controller.snapshot().currently_playing_index == 1



@pytest.mark.anyio
async def test_file_session_plays_queue_to_completion(tmp_path) -> None:
    sink = FakeFileSink()
    h = _harness(tmp_path, sink=sink)
    await h.controller.load_text(TEXT)
    await h.controller.play(0)
    session = h.controller.session
    assert session is not None
    await settle(session)

    for expected in (1, 2):
        sink.finish()
        await settle(session)
        assert h.controller.snapshot().currently_playing_index == expected

    sink.finish()
    await settle(session)

    assert [played[2] for played in sink.played] == [
        f"audio:{TEXT[:300]}".encode(),
        f"audio:{TEXT[300:600]}".encode(),
        f"audio:{TEXT[600:]}".encode(),
    ]
    assert h.controller.session is None
    saved = await h.store.load()
    assert saved is not None and saved.chunk_start_offset == 600


@pytest.mark.anyio
async def test_retry_prompt_answered_yes_recovers(tmp_path) -> None:
    client = StubClient(fail=lambda call, _text: call < 3)
    h = _harness(tmp_path, client=client)
    await h.controller.load_text(TEXT)

    await h.controller.play(0, wait=False)
    prompt = await h.next_event(PlaybackEventType.RETRY_PROMPT)
    assert prompt.payload["chunk_number"] == 1
    assert h.controller.snapshot().pending_prompts[0].prompt_id == prompt.payload["prompt_id"]

    h.controller.resolve_retry_prompt(prompt.payload["prompt_id"], True)
    session = h.controller.session
    assert session is not None and session.loading_task is not None
    assert await session.loading_task

    assert h.controller.snapshot().state == "playing"
    assert h.controller.snapshot().pending_prompts == []
    assert len(client.calls) == 5
    with pytest.raises(KeyError):
        h.controller.resolve_retry_prompt(prompt.payload["prompt_id"], True)


@pytest.mark.anyio
async def test_retry_prompt_answered_no_fails_session(tmp_path) -> None:
    client = StubClient(fail=lambda _call, _text: True)
    h = _harness(tmp_path, client=client)
    await h.controller.load_text(TEXT)

    await h.controller.play(0, wait=False)
    session = h.controller.session
    prompt = await h.next_event(PlaybackEventType.RETRY_PROMPT)
    h.controller.resolve_retry_prompt(prompt.payload["prompt_id"], False)
    assert session is not None and session.loading_task is not None
    assert not await session.loading_task

    error = await h.next_event(PlaybackEventType.ERROR)
    assert error.payload["message"] == FETCH_FAILED_MESSAGE
    assert h.controller.session is None
    assert len(client.calls) == 3
    entries = await h.error_log.entries()
    assert entries[0].endswith(FETCH_FAILED_MESSAGE)


@pytest.mark.anyio
async def test_stop_answers_pending_prompt(tmp_path) -> None:
    client = StubClient(fail=lambda _call, _text: True)
    h = _harness(tmp_path, client=client)
    await h.controller.load_text(TEXT)

    await h.controller.play(0, wait=False)
    await h.next_event(PlaybackEventType.RETRY_PROMPT)
    await h.controller.stop()

    assert h.controller.snapshot().pending_prompts == []
    assert h.controller.session is None
    assert len(client.calls) == 3


@pytest.mark.anyio
async def test_resume_saved_position(tmp_path) -> None:
    h = _harness(tmp_path)
    await ProgressPersistence(h.store).save(TEXT, 300, 400)

    result = await h.controller.load_text(TEXT)
    assert result.resume_offer is not None
    assert result.resume_offer.chunk_start_offset == 300

    assert await h.controller.resume_saved()

    assert h.sink.seeks == [(400, 0)]
    assert h.controller.snapshot().currently_playing_index == 1
    assert h.client.calls[0] == TEXT[300:600]
    assert h.controller.resume_offer is None

    session = h.controller.session
    assert session is not None
    await settle(session)
    saved = await h.store.load()
    assert saved is not None
    assert (saved.chunk_start_offset, saved.position_ms) == (300, 400)


@pytest.mark.anyio
async def test_resume_with_stale_offset_starts_over(tmp_path) -> None:
    h = _harness(tmp_path)
    await ProgressPersistence(h.store).save(TEXT, 150, 900)
    await h.controller.load_text(TEXT)

    assert await h.controller.resume_saved()

    notices = [
        event for event in h.drain_events() if event.type == PlaybackEventType.NOTICE
    ]
    assert notices and "starting from the beginning" in notices[0].payload["message"]
    assert h.controller.snapshot().currently_playing_index == 0
    session = h.controller.session
    assert session is not None
    await settle(session)
    saved = await h.store.load()
    assert saved is not None and saved.chunk_start_offset == 0


@pytest.mark.anyio
async def test_progress_for_other_text_is_not_offered(tmp_path) -> None:
    h = _harness(tmp_path)
    await ProgressPersistence(h.store).save("some other text", 0, 10)

    result = await h.controller.load_text(TEXT)

    assert result.resume_offer is None
    assert not await h.controller.resume_saved()


@pytest.mark.anyio
async def test_speed_is_clamped_and_applied(tmp_path) -> None:
    h = _harness(tmp_path)

    assert await h.controller.set_playback_speed(9.0) == 5.0
    assert h.sink.speed == 5.0
    assert await h.controller.set_playback_speed(0.1) == 0.25
    assert h.controller.settings.playback_speed == 0.25


@pytest.mark.anyio
async def test_chunk_size_change_rechunks_loaded_text(tmp_path) -> None:
    h = _harness(tmp_path)
    await h.controller.load_text(TEXT)
    await h.controller.play(0)

    wider = h.controller.settings.model_copy(update={"max_chars_per_request": 500})
    await h.controller.apply_settings(wider)

    assert h.controller.session is None
    assert [chunk.start_offset for chunk in h.controller.chunks] == [0, 500]


@pytest.mark.anyio
async def test_resume_saved_position_with_file_sink(tmp_path) -> None:
    sink = FakeFileSink()
    h = _harness(tmp_path, sink=sink)
    await ProgressPersistence(h.store).save(TEXT, 300, 400)
    await h.controller.load_text(TEXT)

    assert await h.controller.resume_saved()
    session = h.controller.session
    assert session is not None
    await settle(session)

    assert sink.played[0][1] == 400
    saved = await h.store.load()
    assert saved is not None
    assert (saved.chunk_start_offset, saved.position_ms) == (300, 400)


@pytest.mark.anyio
async def test_undecodable_audio_is_recorded_in_error_log(tmp_path) -> None:
    async def broken_probe(audio: bytes) -> int:
        raise DecodeError("not mp3")

    h = _harness(tmp_path, probe=broken_probe)
    await h.controller.load_text(TEXT)

    assert await h.controller.play(0)
    session = h.controller.session
    assert session is not None
    await settle(session)

    entries = await h.error_log.entries()
    assert any("Error getting duration for chunk 1: not mp3" in entry for entry in entries)
    assert any("Error getting duration for chunk 2: not mp3" in entry for entry in entries)
    assert h.controller.chunks[0].duration_millis is None


@pytest.mark.anyio
async def test_halted_stream_records_stop_in_error_log(tmp_path) -> None:
    client = StubClient(fail=lambda _call, text: text == TEXT[600:])
    h = _harness(tmp_path, client=client)
    await h.controller.load_text(TEXT)
    assert await h.controller.play(0)
    session = h.controller.session
    assert session is not None

    h.sink.finish_current()
    prompt = await h.next_event(PlaybackEventType.RETRY_PROMPT)
    assert prompt.payload["chunk_number"] == 3
    h.controller.resolve_retry_prompt(prompt.payload["prompt_id"], False)
    await settle(session)

    h.sink.finish_current()
    await settle(session)

    assert h.controller.session is None
    assert session.last_error == "Processing stopped for chunk 3."
    entries = await h.error_log.entries()
    assert entries[0].endswith("Processing stopped for chunk 3.")
    assert any(entry.endswith("Chunk 3 fetch failed, status: user_cancelled") for entry in entries)


@pytest.mark.anyio
async def test_proxy_change_keeps_old_client_open_until_session_ends(
    tmp_path, monkeypatch
) -> None:
    created: List[StubClient] = []

    def fake_for_settings(settings: ReaderSettings, *, timeout=None):
        client = StubClient()
        client.proxy = "http://127.0.0.1:7890" if settings.use_proxy else None
        created.append(client)
        return client, None

    monkeypatch.setattr(TTSFetchClient, "for_settings", staticmethod(fake_for_settings))
    sink = FakePlaylistSink()
    controller = PlaybackController(
        settings=ReaderSettings(max_chars_per_request=300, prefetch_chunk_count=2),
        credentials=lambda: Credentials(openai_api_key="sk-test"),
        sink=sink,
        progress=ProgressPersistence(ProgressStore(tmp_path / "progress.json")),
        temp_dir=tmp_path / "audio",
        sleep=no_sleep,
        probe=fixed_probe,
    )
    await controller.load_text(TEXT)
    assert await controller.play(0)
    session = controller.session
    assert session is not None
    await settle(session)

    await controller.apply_settings(controller.settings.model_copy(update={"use_proxy": True}))
    assert len(created) == 2
    assert not created[0].closed

    # The running session finishes its fetches on the client it started with
    sink.finish_current()
    await settle(session)
    assert created[0].calls == [TEXT[:300], TEXT[300:600], TEXT[600:]]
    assert created[1].calls == []

    await controller.stop()
    assert created[0].closed
    assert not created[1].closed

    await controller.shutdown()
    assert created[1].closed


@pytest.mark.anyio
async def test_proxy_change_while_idle_closes_old_client(tmp_path, monkeypatch) -> None:
    created: List[StubClient] = []

    def fake_for_settings(settings: ReaderSettings, *, timeout=None):
        client = StubClient()
        client.proxy = "http://127.0.0.1:7890" if settings.use_proxy else None
        created.append(client)
        return client, None

    monkeypatch.setattr(TTSFetchClient, "for_settings", staticmethod(fake_for_settings))
    controller = PlaybackController(
        settings=ReaderSettings(),
        credentials=Credentials,
        sink=FakePlaylistSink(),
        progress=ProgressPersistence(ProgressStore(tmp_path / "progress.json")),
        temp_dir=tmp_path / "audio",
    )

    await controller.apply_settings(controller.settings.model_copy(update={"use_proxy": True}))

    assert created[0].closed
    assert not created[1].closed
