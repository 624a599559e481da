"""API routes for reader settings, credentials and the configuration probe."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..config import Settings
from ..playback.controller import PlaybackController
from ..schemas.reader_settings import (
    MICROSOFT_FALLBACK_VOICES,
    ConfigurationTestPayload,
    ConfigurationTestResult,
    Credentials,
    CredentialStatus,
    CredentialsUpdate,
    ReaderSettings,
    ReaderSettingsUpdate,
    SpeedUpdate,
    VoiceListResponse,
)
from ..services.credentials import CredentialStore
from ..services.reader_settings import ReaderSettingsService
from ..tts.client import TTSFetchClient
from ..tts.errors import ConfigurationError, ProviderError, TransportError
from ..tts.validation import validate_configuration
from .playback import get_playback_controller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


def get_reader_settings_service(request: Request) -> ReaderSettingsService:
    service = getattr(request.app.state, "reader_settings_service", None)
    if service is None:  # pragma: no cover - defensive
        raise RuntimeError("Reader settings service is not configured")
    return service


def get_credential_store(request: Request) -> CredentialStore:
    store = getattr(request.app.state, "credential_store", None)
    if store is None:  # pragma: no cover - defensive
        raise RuntimeError("Credential store is not configured")
    return store


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:  # pragma: no cover - defensive
        raise RuntimeError("Application settings are not configured")
    return settings


@router.get("", response_model=ReaderSettings)
async def read_settings(
    service: ReaderSettingsService = Depends(get_reader_settings_service),
) -> ReaderSettings:
    return service.get_settings()


@router.put("", response_model=ReaderSettings)
async def update_settings(
    update: ReaderSettingsUpdate,
    service: ReaderSettingsService = Depends(get_reader_settings_service),
    controller: PlaybackController = Depends(get_playback_controller),
) -> ReaderSettings:
    """Persist a partial update and hand the result to the controller."""
    updated = service.update_settings(update)
    await controller.apply_settings(updated)
    return updated


@router.delete("", response_model=ReaderSettings)
async def reset_settings(
    service: ReaderSettingsService = Depends(get_reader_settings_service),
    controller: PlaybackController = Depends(get_playback_controller),
) -> ReaderSettings:
    defaults = service.reset_to_defaults()
    await controller.apply_settings(defaults)
    return defaults


@router.get("/credentials", response_model=CredentialStatus)
async def read_credentials(
    store: CredentialStore = Depends(get_credential_store),
) -> CredentialStatus:
    return CredentialStatus(**store.status())


@router.put("/credentials", response_model=CredentialStatus)
async def update_credentials(
    update: CredentialsUpdate,
    store: CredentialStore = Depends(get_credential_store),
) -> CredentialStatus:
    store.update(update)
    return CredentialStatus(**store.status())


@router.put("/speed", response_model=ReaderSettings)
async def update_speed(
    payload: SpeedUpdate,
    service: ReaderSettingsService = Depends(get_reader_settings_service),
    controller: PlaybackController = Depends(get_playback_controller),
) -> ReaderSettings:
    speed = await controller.set_playback_speed(payload.speed)
    return service.update_settings(ReaderSettingsUpdate(playback_speed=speed))


@router.post("/test", response_model=ConfigurationTestResult)
async def test_configuration(
    payload: ConfigurationTestPayload | None = None,
    service: ReaderSettingsService = Depends(get_reader_settings_service),
    store: CredentialStore = Depends(get_credential_store),
    app_settings: Settings = Depends(get_app_settings),
) -> ConfigurationTestResult:
    """Synthesize a short sample with the (possibly unsaved) configuration."""
    payload = payload or ConfigurationTestPayload()
    settings = service.get_settings()
    if payload.settings is not None:
        settings = ReaderSettings.model_validate(
            {**settings.model_dump(), **payload.settings.model_dump(exclude_none=True)}
        )
    credentials = store.get()
    if payload.credentials is not None:
        overrides = payload.credentials.model_dump(exclude_none=True)
        credentials = Credentials.model_validate({**_plain(credentials), **overrides})

    result = await validate_configuration(
        settings, credentials, timeout=app_settings.request_timeout
    )
    return ConfigurationTestResult(
        ok=result.ok, message=result.message, proxy_warning=result.proxy_warning
    )


def _plain(credentials: Credentials) -> dict[str, str | None]:
    return {
        "openai_api_key": credentials.openai_key() or None,
        "microsoft_subscription_key": credentials.microsoft_key() or None,
    }


@router.get("/voices/microsoft", response_model=VoiceListResponse)
async def list_microsoft_voices(
    region: str | None = Query(default=None),
    service: ReaderSettingsService = Depends(get_reader_settings_service),
    store: CredentialStore = Depends(get_credential_store),
    app_settings: Settings = Depends(get_app_settings),
) -> VoiceListResponse:
    """Live voice list for the region, or the built-in table when that fails."""
    settings = service.get_settings()
    client, _ = TTSFetchClient.for_settings(settings, timeout=app_settings.request_timeout)
    try:
        voices = await client.list_voices(
            region or settings.ms_region, store.get().microsoft_key()
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (ProviderError, TransportError) as exc:
        logger.warning("Failed to fetch Microsoft voices: %s", exc)
        return VoiceListResponse(
            voices=MICROSOFT_FALLBACK_VOICES, source="fallback", error=str(exc)
        )
    finally:
        await client.aclose()
    if not voices:
        return VoiceListResponse(voices=MICROSOFT_FALLBACK_VOICES, source="fallback")
    return VoiceListResponse(voices=voices, source="live")


__all__ = ["router"]
