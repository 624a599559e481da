"""Reader settings schema for synthesis, buffering and playback configuration."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator


class TTSProvider(str, Enum):
    """Remote speech providers the reader can fetch audio from."""

    OPENAI = "openai"
    MICROSOFT = "microsoft"


# Available OpenAI TTS models and voices
OPENAI_MODELS = ["tts-1", "tts-1-hd"]

OPENAI_VOICES = [
    "alloy",
    "echo",
    "fable",
    "onyx",
    "nova",
    "shimmer",
]

# Used until the live voice list has been fetched from the region
MICROSOFT_FALLBACK_VOICES: dict[str, list[str]] = {
    "zh-CN": [
        "zh-CN-XiaoxiaoNeural",
        "zh-CN-YunyangNeural",
        "zh-CN-XiaoyiNeural",
        "zh-CN-YunjianNeural",
        "zh-CN-YunxiNeural",
        "zh-CN-YunyeNeural",
    ],
    "en-US": [
        "en-US-JennyNeural",
        "en-US-AriaNeural",
        "en-US-GuyNeural",
        "en-US-DavisNeural",
        "en-US-JaneNeural",
    ],
    "ja-JP": ["ja-JP-NanamiNeural", "ja-JP-KeitaNeural"],
    "ko-KR": ["ko-KR-SunHiNeural", "ko-KR-InJoonNeural"],
}

MIN_PLAYBACK_SPEED = 0.25
MAX_PLAYBACK_SPEED = 5.0


def default_microsoft_voice(language: str) -> str:
    """Return the first known voice for ``language``, falling back to en-US."""
    voices = MICROSOFT_FALLBACK_VOICES.get(language)
    if voices:
        return voices[0]
    return MICROSOFT_FALLBACK_VOICES["en-US"][0]


def clamp_playback_speed(speed: float) -> float:
    return max(MIN_PLAYBACK_SPEED, min(MAX_PLAYBACK_SPEED, speed))


class ReaderSettings(BaseModel):
    """Settings for one reader: provider selection, chunking and playback."""

    provider: TTSProvider = Field(
        default=TTSProvider.OPENAI,
        description="TTS provider. Options: 'openai' or 'microsoft'.",
    )

    openai_model: str = Field(default="tts-1")
    openai_voice: str = Field(default="nova")

    ms_region: str = Field(default="westus")
    ms_language: str = Field(default="zh-CN")
    ms_voice_name: str = Field(
        default="",
        description="Voice short name. Empty means the first voice of ms_language.",
    )

    use_proxy: bool = Field(default=False)
    proxy_host: str = Field(default="127.0.0.1")
    proxy_port: str = Field(
        default="7897",
        description="Kept as text so an invalid port can be reported instead of rejected.",
    )

    playback_speed: float = Field(default=1.0)
    max_chars_per_request: int = Field(
        default=300,
        description="Character count of each synthesis request.",
    )
    prefetch_chunk_count: int = Field(
        default=2,
        ge=1,
        description="Chunks fetched ahead of playback per batch.",
    )
    preload_failure_policy: Literal["skip", "fail"] = Field(
        default="skip",
        description=(
            "What the file-queue buffer does when a chunk cannot be fetched: "
            "'skip' logs and moves on to the next chunk, 'fail' ends the session."
        ),
    )
    auto_bookmark: bool = Field(
        default=True,
        description="Bookmark every chunk whose progress gets saved.",
    )

    @field_validator("playback_speed")
    @classmethod
    def _clamp_speed(cls, value: float) -> float:
        return clamp_playback_speed(value)

    def effective_ms_voice(self) -> str:
        return self.ms_voice_name or default_microsoft_voice(self.ms_language)


class ReaderSettingsUpdate(BaseModel):
    """Partial update schema - all fields optional."""

    provider: TTSProvider | None = Field(default=None)
    openai_model: str | None = Field(default=None)
    openai_voice: str | None = Field(default=None)
    ms_region: str | None = Field(default=None)
    ms_language: str | None = Field(default=None)
    ms_voice_name: str | None = Field(default=None)
    use_proxy: bool | None = Field(default=None)
    proxy_host: str | None = Field(default=None)
    proxy_port: str | None = Field(default=None)
    playback_speed: float | None = Field(default=None)
    max_chars_per_request: int | None = Field(default=None)
    prefetch_chunk_count: int | None = Field(default=None, ge=1)
    preload_failure_policy: Literal["skip", "fail"] | None = Field(default=None)
    auto_bookmark: bool | None = Field(default=None)


class Credentials(BaseModel):
    """Per-provider secrets. Opaque to everything except the fetch client."""

    openai_api_key: SecretStr | None = None
    microsoft_subscription_key: SecretStr | None = None

    def openai_key(self) -> str:
        return self.openai_api_key.get_secret_value() if self.openai_api_key else ""

    def microsoft_key(self) -> str:
        if self.microsoft_subscription_key is None:
            return ""
        return self.microsoft_subscription_key.get_secret_value()


class CredentialsUpdate(BaseModel):
    """An empty string removes the stored key; None leaves it untouched."""

    openai_api_key: str | None = None
    microsoft_subscription_key: str | None = None


class ConfigurationTestPayload(BaseModel):
    """Unsaved edits to try out; omitted parts use the saved values."""

    settings: ReaderSettingsUpdate | None = None
    credentials: CredentialsUpdate | None = None


class ConfigurationTestResult(BaseModel):
    ok: bool
    message: str
    proxy_warning: str | None = None


class CredentialStatus(BaseModel):
    openai_api_key: bool
    microsoft_subscription_key: bool


class SpeedUpdate(BaseModel):
    speed: float = Field(..., gt=0)


class VoiceListResponse(BaseModel):
    voices: dict[str, list[str]]
    source: Literal["live", "fallback"]
    error: str | None = None


def get_default_reader_settings() -> ReaderSettings:
    """Return default reader settings."""
    return ReaderSettings()


__all__ = [
    "ConfigurationTestPayload",
    "ConfigurationTestResult",
    "CredentialStatus",
    "Credentials",
    "CredentialsUpdate",
    "MAX_PLAYBACK_SPEED",
    "MICROSOFT_FALLBACK_VOICES",
    "MIN_PLAYBACK_SPEED",
    "OPENAI_MODELS",
    "OPENAI_VOICES",
    "ReaderSettings",
    "ReaderSettingsUpdate",
    "SpeedUpdate",
    "TTSProvider",
    "clamp_playback_speed",
    "default_microsoft_voice",
    "VoiceListResponse",
    "get_default_reader_settings",
]
