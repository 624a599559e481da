"""HTTP client for the remote speech providers.

One call, one request: retries live in :mod:`readaloud.tts.retry`. Failures
are raised as :class:`TransportError` (no response) or :class:`ProviderError`
(non-200 response) so the caller can decide what to do with them.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from ..schemas.reader_settings import Credentials, ReaderSettings, TTSProvider
from .errors import ConfigurationError, ProviderError, TransportError

logger = logging.getLogger(__name__)

OPENAI_SPEECH_URL = "https://api.openai.com/v1/audio/speech"
MICROSOFT_SPEECH_URL = "https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"
MICROSOFT_VOICES_URL = (
    "https://{region}.tts.speech.microsoft.com/cognitiveservices/voices/list"
)
MICROSOFT_OUTPUT_FORMAT = "audio-16khz-128kbitrate-mono-mp3"
USER_AGENT = "readaloud"
UNKNOWN_ERROR = "Unknown error"


def escape_xml(text: str) -> str:
    """Escape the five XML entities. ``&`` first so nothing is double-escaped."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def build_ssml(text: str, language: str, voice_name: str) -> str:
    return (
        "<speak version='1.0' xmlns='http://www.w3.org/2001/10/synthesis' "
        f"xml:lang='{escape_xml(language)}'>"
        f"<voice name='{escape_xml(voice_name)}'>{escape_xml(text)}</voice>"
        "</speak>"
    )


def extract_error_message(response: httpx.Response) -> str:
    """Pull the provider's message out of an error response.

    JSON bodies yield ``error.message`` (or the generic message when absent);
    anything else yields the raw body text.
    """
    body = response.text
    try:
        payload = json.loads(body)
    except ValueError:
        return body if body else UNKNOWN_ERROR

    if not isinstance(payload, dict):
        return body if body else UNKNOWN_ERROR
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    return UNKNOWN_ERROR


def resolve_proxy(settings: ReaderSettings) -> tuple[Optional[str], Optional[str]]:
    """Return ``(proxy_url, warning)`` for the proxy fields of ``settings``.

    An unusable port falls back to a direct connection and produces a warning
    for the presentation layer instead of an error.
    """
    if not settings.use_proxy:
        return None, None
    host = settings.proxy_host.strip()
    port = settings.proxy_port.strip()
    if not host or not port:
        return None, None
    try:
        port_number = int(port)
    except ValueError:
        warning = f"Invalid proxy port {port!r}, proxy will not be used."
        logger.warning(warning)
        return None, warning
    if not 0 < port_number < 65536:
        warning = f"Invalid proxy port {port!r}, proxy will not be used."
        logger.warning(warning)
        return None, warning
    return f"http://{host}:{port_number}", None


def ensure_credentials(settings: ReaderSettings, credentials: Credentials) -> None:
    """Raise :class:`ConfigurationError` when the active provider cannot be called."""
    if settings.provider == TTSProvider.OPENAI:
        if not credentials.openai_key():
            raise ConfigurationError("Please enter your OpenAI API key in settings.")
        return
    if not credentials.microsoft_key() or not settings.ms_region.strip():
        raise ConfigurationError(
            "Please enter your Microsoft TTS subscription key and region in settings."
        )


class TTSFetchClient:
    """Stateless synthesis calls against OpenAI or Microsoft Azure.

    Owns one ``httpx.AsyncClient`` (created lazily) so connections are pooled
    across the chunks of a session. The proxy is fixed per instance; build a
    new client when the proxy settings change.
    """

    def __init__(
        self,
        *,
        proxy: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._proxy = proxy
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def for_settings(
        cls,
        settings: ReaderSettings,
        *,
        timeout: Optional[float] = None,
    ) -> tuple["TTSFetchClient", Optional[str]]:
        """Build a client honouring the proxy of ``settings``; also return any proxy warning."""
        proxy, warning = resolve_proxy(settings)
        return cls(proxy=proxy, timeout=timeout), warning

    @property
    def proxy(self) -> Optional[str]:
        return self._proxy

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            kwargs: dict[str, Any] = {}
            if self._proxy:
                kwargs["proxy"] = self._proxy
            if self._timeout is not None:
                kwargs["timeout"] = httpx.Timeout(self._timeout)
            self._http_client = httpx.AsyncClient(**kwargs)
            logger.debug("Created TTS http client (proxy=%s)", self._proxy)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def synthesize(
        self,
        text: str,
        settings: ReaderSettings,
        credentials: Credentials,
    ) -> bytes:
        """Synthesize ``text`` with the provider selected in ``settings``; return MP3 bytes."""
        ensure_credentials(settings, credentials)
        if settings.provider == TTSProvider.OPENAI:
            return await self._synthesize_openai(text, settings, credentials)
        return await self._synthesize_microsoft(text, settings, credentials)

    async def _synthesize_openai(
        self,
        text: str,
        settings: ReaderSettings,
        credentials: Credentials,
    ) -> bytes:
        headers = {
            "Authorization": f"Bearer {credentials.openai_key()}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": settings.openai_model,
            "input": text,
            "voice": settings.openai_voice,
            "response_format": "mp3",
        }
        response = await self._send(
            "POST", OPENAI_SPEECH_URL, headers=headers, json=payload
        )
        return self._audio_or_raise(response, "OpenAI", text)

    async def _synthesize_microsoft(
        self,
        text: str,
        settings: ReaderSettings,
        credentials: Credentials,
    ) -> bytes:
        headers = {
            "Ocp-Apim-Subscription-Key": credentials.microsoft_key(),
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": MICROSOFT_OUTPUT_FORMAT,
            "User-Agent": USER_AGENT,
        }
        ssml = build_ssml(text, settings.ms_language, settings.effective_ms_voice())
        url = MICROSOFT_SPEECH_URL.format(region=settings.ms_region.strip())
        response = await self._send(
            "POST", url, headers=headers, content=ssml.encode("utf-8")
        )
        return self._audio_or_raise(response, "Microsoft", text)

    async def list_voices(self, region: str, subscription_key: str) -> dict[str, list[str]]:
        """Return Microsoft voice short names grouped by locale."""
        if not region.strip() or not subscription_key:
            raise ConfigurationError("MS key or region not provided.")

        url = MICROSOFT_VOICES_URL.format(region=region.strip())
        response = await self._send(
            "GET", url, headers={"Ocp-Apim-Subscription-Key": subscription_key}
        )
        if response.status_code != 200:
            raise ProviderError(response.status_code, extract_error_message(response))

        try:
            entries = response.json()
        except ValueError as exc:
            raise ProviderError(response.status_code, f"Invalid voice list: {exc}") from exc

        voices: dict[str, list[str]] = {}
        if not isinstance(entries, list):
            return voices
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            short_name = entry.get("ShortName")
            locale = entry.get("Locale")
            if short_name and locale:
                voices.setdefault(locale, []).append(short_name)
        logger.info("Fetched %d Microsoft voices across %d locales",
                    sum(len(v) for v in voices.values()), len(voices))
        return voices

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self._get_http_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    @staticmethod
    def _audio_or_raise(response: httpx.Response, provider: str, text: str) -> bytes:
        if response.status_code != 200:
            raise ProviderError(response.status_code, extract_error_message(response))
        audio = response.content
        logger.info(
            "%s TTS synthesized %d bytes for text: %s...",
            provider,
            len(audio),
            text[:50],
        )
        return audio


__all__ = [
    "MICROSOFT_OUTPUT_FORMAT",
    "MICROSOFT_SPEECH_URL",
    "MICROSOFT_VOICES_URL",
    "OPENAI_SPEECH_URL",
    "TTSFetchClient",
    "UNKNOWN_ERROR",
    "build_ssml",
    "ensure_credentials",
    "escape_xml",
    "extract_error_message",
    "resolve_proxy",
]
