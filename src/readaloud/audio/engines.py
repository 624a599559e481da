"""Audio sinks backed by an ``ffplay`` subprocess.

Each play request launches one ``ffplay -nodisp -autoexit`` process. Pausing
terminates it and remembers the position; resuming relaunches at that
position. The position reported to listeners is derived from a monotonic
clock and the current speed, ticking every ``tick_interval`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from pathlib import Path
from typing import List, Optional

from .sink import FileAudioSink, PlaylistAudioSink, SinkEvent, SinkEventKind

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 0.2
_TERMINATE_TIMEOUT = 3.0


class AudioEngineError(RuntimeError):
    """The player process could not be started."""


def atempo_chain(speed: float) -> List[str]:
    """Express ``speed`` as ``atempo`` filters each within 0.5..2.0."""
    factors: List[float] = []
    remaining = speed
    while remaining > 2.0:
        factors.append(2.0)
        remaining /= 2.0
    while remaining < 0.5:
        factors.append(0.5)
        remaining /= 0.5
    factors.append(remaining)
    return [f"atempo={factor:.6g}" for factor in factors]


def build_ffplay_command(
    ffplay_path: str,
    source: str,
    *,
    position_ms: int = 0,
    speed: float = 1.0,
    seekable: bool = True,
) -> List[str]:
    """Build the argv for one ffplay run.

    Piped input cannot be seeked, so its start position is applied with an
    ``atrim`` filter instead of ``-ss``.
    """
    argv = [ffplay_path, "-nodisp", "-autoexit", "-loglevel", "error"]
    filters: List[str] = []
    if position_ms > 0:
        seconds = f"{position_ms / 1000:.3f}"
        if seekable:
            argv += ["-ss", seconds]
        else:
            filters += [f"atrim=start={seconds}", "asetpts=PTS-STARTPTS"]
    if abs(speed - 1.0) > 1e-6:
        filters += atempo_chain(speed)
    if filters:
        argv += ["-af", ",".join(filters)]
    argv += ["-i", source]
    return argv


class _FfplayTransport:
    """Process handling shared by the two ffplay sinks."""

    def _init_transport(self, ffplay_path: str, tick_interval: float) -> None:
        self._ffplay_path = ffplay_path
        self._tick_interval = tick_interval
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._generation = 0
        self._speed = 1.0
        self._base_ms = 0
        self._started_at: Optional[float] = None
        self._is_playing = False

    def _current_position_ms(self) -> int:
        if self._started_at is None:
            return self._base_ms
        elapsed = time.monotonic() - self._started_at
        return self._base_ms + int(elapsed * 1000 * self._speed)

    async def _launch(
        self,
        source: str,
        position_ms: int,
        *,
        stdin_data: Optional[bytes] = None,
    ) -> None:
        await self._halt()
        argv = build_ffplay_command(
            self._ffplay_path,
            source,
            position_ms=position_ms,
            speed=self._speed,
            seekable=stdin_data is None,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AudioEngineError(f"Could not start {self._ffplay_path}: {exc}") from exc

        self._generation += 1
        self._process = process
        self._base_ms = position_ms
        self._started_at = time.monotonic()
        self._is_playing = True
        logger.debug("ffplay pid=%s started at %d ms", process.pid, position_ms)
        self._watch_task = asyncio.create_task(
            self._watch(process, self._generation, stdin_data)
        )
        self._ensure_ticker()

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        generation: int,
        stdin_data: Optional[bytes],
    ) -> None:
        if stdin_data is not None and process.stdin is not None:
            try:
                process.stdin.write(stdin_data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug("ffplay closed its input early: %s", exc)
            finally:
                process.stdin.close()
        stderr = await process.stderr.read() if process.stderr is not None else b""
        code = await process.wait()
        if generation != self._generation:
            return
        self._process = None
        self._watch_task = None
        self._is_playing = False
        self._base_ms = self._current_position_ms()
        self._started_at = None
        if code != 0:
            logger.warning(
                "ffplay exited with code %s: %s",
                code,
                stderr.decode(errors="replace").strip(),
            )
        await self._on_natural_end()

    @abstractmethod
    async def _on_natural_end(self) -> None:
        """Called once the process exits without being halted."""

    async def _halt(self) -> int:
        """Stop the running process, keeping the position it had reached."""
        position = self._current_position_ms()
        self._generation += 1
        process, self._process = self._process, None
        watch_task, self._watch_task = self._watch_task, None
        if watch_task is not None and watch_task is not asyncio.current_task():
            watch_task.cancel()
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_TIMEOUT)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        self._is_playing = False
        self._started_at = None
        self._base_ms = position
        return position

    def _ensure_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick())

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            if self._is_playing:
                self._emit(
                    SinkEvent(SinkEventKind.POSITION, position_ms=self._current_position_ms())
                )

    async def _stop_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)


class FfplayPlaylistSink(_FfplayTransport, PlaylistAudioSink):
    """Playlist of in-memory MP3 sources, each piped to ffplay through stdin."""

    def __init__(
        self,
        ffplay_path: str = "ffplay",
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        PlaylistAudioSink.__init__(self)
        self._init_transport(ffplay_path, tick_interval)
        self._items: List[bytes] = []
        self._index = 0
        self._announced_index = -1

    @property
    def playing(self) -> bool:
        return self._is_playing

    @property
    def position_ms(self) -> int:
        return self._current_position_ms()

    @property
    def playlist_length(self) -> int:
        return len(self._items)

    @property
    def current_index(self) -> Optional[int]:
        return self._index if self._items else None

    async def reset_playlist(self) -> None:
        await self._halt()
        self._items.clear()
        self._index = 0
        self._announced_index = -1
        self._base_ms = 0

    async def append(self, audio: bytes, content_type: str = "audio/mpeg") -> None:
        self._items.append(audio)

    async def _start_current(self, position_ms: int) -> None:
        await self._launch("pipe:0", position_ms, stdin_data=self._items[self._index])
        if self._announced_index != self._index:
            self._announced_index = self._index
            self._emit(SinkEvent(SinkEventKind.INDEX_CHANGED, index=self._index))

    async def play(self) -> None:
        if not self._items or self._is_playing:
            return
        await self._start_current(self._base_ms)
        self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=True))

    async def pause(self) -> None:
        if not self._is_playing:
            return
        await self._halt()
        self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=False))

    async def stop(self) -> None:
        was_playing = self._is_playing
        await self._halt()
        self._base_ms = 0
        if was_playing:
            self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=False))

    async def seek(self, position_ms: int, index: Optional[int] = None) -> None:
        if index is not None:
            if not 0 <= index < len(self._items):
                raise IndexError(f"playlist index {index} out of range")
            self._index = index
        if self._is_playing:
            await self._start_current(position_ms)
            return
        self._base_ms = position_ms
        if index is not None and self._announced_index != index:
            self._announced_index = index
            self._emit(SinkEvent(SinkEventKind.INDEX_CHANGED, index=index))

    async def set_speed(self, speed: float) -> None:
        if self._is_playing:
            position = await self._halt()
            self._speed = speed
            await self._start_current(position)
        else:
            self._speed = speed

    async def _on_natural_end(self) -> None:
        if self._index + 1 < len(self._items):
            self._index += 1
            await self._start_current(0)
            return
        self._base_ms = 0
        self._emit(SinkEvent(SinkEventKind.COMPLETED, index=self._index))

    async def dispose(self) -> None:
        await super().dispose()
        await self._stop_ticker()
        self._items.clear()


class FfplayFileSink(_FfplayTransport, FileAudioSink):
    """Plays one audio file at a time."""

    def __init__(
        self,
        ffplay_path: str = "ffplay",
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        FileAudioSink.__init__(self)
        self._init_transport(ffplay_path, tick_interval)
        self._path: Optional[Path] = None

    @property
    def playing(self) -> bool:
        return self._is_playing

    @property
    def position_ms(self) -> int:
        return self._current_position_ms()

    async def play_file(self, path: Path, position_ms: int = 0) -> None:
        self._path = path
        await self._launch(str(path), position_ms)
        self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=True))

    async def play(self) -> None:
        if self._path is None or self._is_playing:
            return
        await self._launch(str(self._path), self._base_ms)
        self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=True))

    async def pause(self) -> None:
        if not self._is_playing:
            return
        await self._halt()
        self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=False))

    async def stop(self) -> None:
        was_playing = self._is_playing
        await self._halt()
        self._path = None
        self._base_ms = 0
        if was_playing:
            self._emit(SinkEvent(SinkEventKind.PLAYER_STATE, playing=False))

    async def set_speed(self, speed: float) -> None:
        if self._is_playing and self._path is not None:
            position = await self._halt()
            self._speed = speed
            await self._launch(str(self._path), position)
        else:
            self._speed = speed

    async def _on_natural_end(self) -> None:
        self._base_ms = 0
        self._emit(SinkEvent(SinkEventKind.COMPLETED))

    async def dispose(self) -> None:
        await super().dispose()
        await self._stop_ticker()


__all__ = [
    "AudioEngineError",
    "FfplayFileSink",
    "FfplayPlaylistSink",
    "atempo_chain",
    "build_ffplay_command",
]
