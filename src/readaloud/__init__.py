"""Read-aloud backend: chunked TTS fetching, buffered playback and progress."""

__version__ = "0.1.0"
