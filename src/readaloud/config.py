"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider keys seed the credential store when it has no saved value
    openai_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    azure_speech_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "AZURE_SPEECH_KEY",
            "MS_TTS_KEY",
            "azure_speech_key",
        ),
    )

    reader_settings_path: Path = Field(
        default_factory=lambda: Path("data/reader_settings.json"),
        validation_alias=AliasChoices("READER_SETTINGS_PATH", "reader_settings_path"),
    )
    credentials_path: Path = Field(
        default_factory=lambda: Path("data/credentials.json"),
        validation_alias=AliasChoices("CREDENTIALS_PATH", "credentials_path"),
    )
    profiles_path: Path = Field(
        default_factory=lambda: Path("data/profiles.json"),
        validation_alias=AliasChoices("PROFILES_PATH", "profiles_path"),
    )
    progress_path: Path = Field(
        default_factory=lambda: Path("data/progress.json"),
        validation_alias=AliasChoices("PROGRESS_PATH", "progress_path"),
    )
    bookmarks_path: Path = Field(
        default_factory=lambda: Path("data/bookmarks.json"),
        validation_alias=AliasChoices("BOOKMARKS_PATH", "bookmarks_path"),
    )
    error_log_path: Path = Field(
        default_factory=lambda: Path("data/error_log.json"),
        validation_alias=AliasChoices("ERROR_LOG_PATH", "error_log_path"),
    )
    document_path: Path = Field(
        default_factory=lambda: Path("data/current_text.txt"),
        validation_alias=AliasChoices("DOCUMENT_PATH", "document_path"),
    )
    temp_audio_dir: Path = Field(
        default_factory=lambda: Path("data/tmp_audio"),
        validation_alias=AliasChoices("TEMP_AUDIO_DIR", "temp_audio_dir"),
    )

    # None keeps the httpx client default
    request_timeout: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("TTS_REQUEST_TIMEOUT", "request_timeout"),
        gt=0,
    )

    audio_engine: Literal["auto", "playlist", "files"] = Field(
        default="auto",
        validation_alias=AliasChoices("AUDIO_ENGINE", "audio_engine"),
        description=(
            "Buffering strategy of the playback engine. 'playlist' streams "
            "in-memory audio, 'files' plays preloaded temp files, 'auto' "
            "uses files on Windows and playlist elsewhere."
        ),
    )
    ffplay_path: str = Field(
        default="ffplay",
        validation_alias=AliasChoices("FFPLAY_PATH", "ffplay_path"),
    )

    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices("LOGGING_SETTINGS_PATH", "logging_settings_path"),
    )
    log_dir: Path = Field(
        default_factory=lambda: Path("logs/reader"),
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )

    host: str = Field(
        default="127.0.0.1",
        validation_alias=AliasChoices("READALOUD_HOST", "host"),
    )
    port: int = Field(
        default=8000,
        validation_alias=AliasChoices("READALOUD_PORT", "port"),
        ge=1,
        le=65535,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
