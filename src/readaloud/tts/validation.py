"""One-shot configuration probe used by the settings screen."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..schemas.reader_settings import Credentials, ReaderSettings, TTSProvider
from .client import TTSFetchClient, ensure_credentials
from .errors import ConfigurationError, ProviderError, TransportError
from .retry import RetryCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    proxy_warning: Optional[str] = None


def probe_text(settings: ReaderSettings) -> str:
    if settings.provider == TTSProvider.MICROSOFT and settings.ms_language.lower().startswith("zh"):
        return "测试"
    return "Test"


async def validate_configuration(
    settings: ReaderSettings,
    credentials: Credentials,
    *,
    client: Optional[TTSFetchClient] = None,
    timeout: Optional[float] = None,
) -> ProbeResult:
    """Synthesize a tiny sample with the settings under test.

    Runs through the retry coordinator in test mode so a flaky network gets
    the usual automatic attempts but nobody is prompted. The last failure is
    reported back verbatim.
    """
    try:
        ensure_credentials(settings, credentials)
    except ConfigurationError as exc:
        return ProbeResult(ok=False, message=str(exc))

    warning: Optional[str] = None
    owns_client = client is None
    if client is None:
        client, warning = TTSFetchClient.for_settings(settings, timeout=timeout)

    last_error: list[str] = []

    async def _fetch(text: str) -> bytes:
        try:
            return await client.synthesize(text, settings, credentials)
        except ProviderError as exc:
            last_error[:] = [f"Test failed: {exc.status_code} - {exc.message}"]
            raise
        except TransportError as exc:
            last_error[:] = [f"Test request failed: {exc}"]
            raise

    coordinator = RetryCoordinator(_fetch)
    try:
        outcome = await coordinator.run(probe_text(settings), 1, is_test=True)
    finally:
        if owns_client:
            await client.aclose()

    if outcome.ok:
        logger.info("Configuration probe succeeded for provider %s", settings.provider.value)
        return ProbeResult(ok=True, message="Configuration is valid!", proxy_warning=warning)
    message = last_error[0] if last_error else "Test request could not be completed."
    logger.info("Configuration probe failed: %s", message)
    return ProbeResult(ok=False, message=message, proxy_warning=warning)


__all__ = ["ProbeResult", "probe_text", "validate_configuration"]
