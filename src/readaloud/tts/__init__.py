"""
TTS (Text-to-Speech) fetch layer.

This package turns one chunk of text into one MP3 payload:

- client: provider-specific request shaping (OpenAI JSON, Microsoft SSML)
- retry: bounded automatic retries plus user-confirmed retry cycles
- validation: the configuration probe used before saving settings

Architecture Overview:

    ┌──────────────┐     ┌──────────────────┐     ┌────────────────┐
    │ FetchPipeline│────▶│ RetryCoordinator │────▶│ TTSFetchClient │────▶ provider
    └──────────────┘     └──────────────────┘     └────────────────┘
                                  │
                                  ▼
                          decide(RetryPrompt)  (awaited, answered by the user)

Nothing in here retries on its own except the coordinator, and nothing
touches playback.
"""

from .client import TTSFetchClient
from .errors import (
    ConfigurationError,
    DecodeError,
    ProviderError,
    TransportError,
    TTSError,
)
from .retry import FetchOutcome, RetryCoordinator, RetryPrompt, RetryStatus

__all__ = [
    "ConfigurationError",
    "DecodeError",
    "FetchOutcome",
    "ProviderError",
    "RetryCoordinator",
    "RetryPrompt",
    "RetryStatus",
    "TTSError",
    "TTSFetchClient",
    "TransportError",
]
