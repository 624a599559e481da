"""Per-provider API keys, stored apart from the shareable settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, ValidationError

from ..schemas.reader_settings import Credentials, CredentialsUpdate

logger = logging.getLogger(__name__)


class CredentialStore:
    """Keep keys in a private JSON file, falling back to environment values.

    A key saved through :meth:`update` always wins over the environment; an
    empty string removes the saved key so the environment value shows again.
    """

    def __init__(
        self,
        path: Path,
        *,
        env_openai_key: Optional[SecretStr] = None,
        env_microsoft_key: Optional[SecretStr] = None,
    ) -> None:
        self._path = path
        self._env = Credentials(
            openai_api_key=env_openai_key,
            microsoft_subscription_key=env_microsoft_key,
        )
        self._stored = self._load_from_disk()

    def _load_from_disk(self) -> Credentials:
        if not self._path.exists():
            return Credentials()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return Credentials.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Failed to read credentials file %s: %s", self._path, exc)
            return Credentials()

    def _save_to_disk(self) -> None:
        payload = {
            "openai_api_key": self._stored.openai_key() or None,
            "microsoft_subscription_key": self._stored.microsoft_key() or None,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        try:
            os.chmod(self._path, 0o600)
        except OSError as exc:
            logger.warning("Could not restrict permissions on %s: %s", self._path, exc)

    def get(self) -> Credentials:
        return Credentials(
            openai_api_key=self._stored.openai_api_key or self._env.openai_api_key,
            microsoft_subscription_key=(
                self._stored.microsoft_subscription_key
                or self._env.microsoft_subscription_key
            ),
        )

    def update(self, update: CredentialsUpdate) -> Credentials:
        values = update.model_dump(exclude_none=True)
        stored = self._stored.model_copy()
        for field, value in values.items():
            setattr(stored, field, SecretStr(value) if value else None)
        self._stored = stored
        self._save_to_disk()
        logger.info("Updated stored credentials: %s", ", ".join(sorted(values)) or "none")
        return self.get()

    def status(self) -> dict[str, bool]:
        """Which keys are available, without exposing them."""
        current = self.get()
        return {
            "openai_api_key": bool(current.openai_key()),
            "microsoft_subscription_key": bool(current.microsoft_key()),
        }


__all__ = ["CredentialStore"]
