"""Measure the duration of fetched audio bytes."""

from __future__ import annotations

import asyncio
import io
import logging

from ..tts.errors import DecodeError

logger = logging.getLogger(__name__)


def _decode_duration_ms(audio: bytes, audio_format: str) -> int:
    from pydub import AudioSegment
    from pydub.exceptions import CouldntDecodeError

    try:
        segment = AudioSegment.from_file(io.BytesIO(audio), format=audio_format)
    except CouldntDecodeError as exc:
        raise DecodeError(f"Could not decode {audio_format} audio: {exc}") from exc
    except (OSError, IndexError) as exc:
        raise DecodeError(f"Decoder unavailable for {audio_format} audio: {exc}") from exc
    return len(segment)


async def probe_duration_ms(audio: bytes, audio_format: str = "mp3") -> int:
    """Decode ``audio`` in a throwaway segment and return its length in ms.

    Raises :class:`DecodeError` when the bytes cannot be decoded; callers
    treat that as "no highlight timing" rather than a failed chunk.
    """
    if not audio:
        raise DecodeError("Empty audio payload")
    return await asyncio.to_thread(_decode_duration_ms, audio, audio_format)


__all__ = ["probe_duration_ms"]
