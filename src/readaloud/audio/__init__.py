"""Audio sinks and the duration probe."""

from .engines import AudioEngineError, FfplayFileSink, FfplayPlaylistSink
from .sink import AudioSink, FileAudioSink, PlaylistAudioSink, SinkEvent, SinkEventKind

__all__ = [
    "AudioEngineError",
    "AudioSink",
    "FfplayFileSink",
    "FfplayPlaylistSink",
    "FileAudioSink",
    "PlaylistAudioSink",
    "SinkEvent",
    "SinkEventKind",
]
