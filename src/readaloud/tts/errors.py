"""Failure taxonomy for speech synthesis and playback preparation."""

from __future__ import annotations


class TTSError(Exception):
    """Base class for synthesis failures."""


class TransportError(TTSError):
    """No response was received (connection refused, DNS, timeout...)."""


class ProviderError(TTSError):
    """The provider answered with a non-200 status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code} - {message}")
        self.status_code = status_code
        self.message = message


class DecodeError(TTSError):
    """Fetched audio could not be decoded to measure its duration.

    Non-fatal: the chunk is still playable, it just lacks highlight timing.
    """


class ConfigurationError(TTSError):
    """Required credentials or settings are missing; nothing was sent."""


__all__ = [
    "ConfigurationError",
    "DecodeError",
    "ProviderError",
    "TTSError",
    "TransportError",
]
