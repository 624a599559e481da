"""Reader settings service for persisting synthesis and playback configuration."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..schemas.reader_settings import ReaderSettings, ReaderSettingsUpdate

logger = logging.getLogger(__name__)


class ReaderSettingsService:
    """Service for managing reader settings persistence."""

    def __init__(self, settings_path: Path):
        self._path = settings_path
        self._cached: Optional[ReaderSettings] = None

    def get_settings(self) -> ReaderSettings:
        """Load settings from file or return defaults."""
        if self._cached is not None:
            return self._cached

        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
                self._cached = ReaderSettings.model_validate(data)
                logger.info("Loaded reader settings from %s", self._path)
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                logger.warning("Failed to load reader settings: %s, using defaults", exc)
                self._cached = ReaderSettings()
        else:
            self._cached = ReaderSettings()
            logger.info("Using default reader settings")

        return self._cached

    def update_settings(self, update: ReaderSettingsUpdate) -> ReaderSettings:
        """Merge non-None fields into the current settings and persist.

        Re-validated as a whole so clamps and bounds apply to the result.
        """
        current = self.get_settings()
        update_data = update.model_dump(exclude_none=True)
        merged = ReaderSettings.model_validate({**current.model_dump(), **update_data})
        self._save(merged)
        return merged

    def replace_settings(self, settings: ReaderSettings) -> ReaderSettings:
        self._save(settings)
        return settings

    def reset_to_defaults(self) -> ReaderSettings:
        """Reset settings to defaults."""
        defaults = ReaderSettings()
        self._save(defaults)
        return defaults

    def _save(self, settings: ReaderSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
        self._cached = settings
        logger.info("Saved reader settings to %s", self._path)


__all__ = ["ReaderSettingsService"]
