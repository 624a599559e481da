"""Service for saving and applying named reader profiles."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from pydantic import ValidationError

from ..schemas.profiles import ProfileListItem, ReaderProfile
from .bookmarks import BookmarkStore
from .reader_settings import ReaderSettingsService

logger = logging.getLogger(__name__)


class ProfileService:
    """Snapshot the current settings and bookmarks under a name.

    Credentials never go into a profile; they stay in the credential store.
    """

    def __init__(
        self,
        path: Path,
        settings_service: ReaderSettingsService,
        bookmarks: BookmarkStore,
    ) -> None:
        self._path = path
        self._settings_service = settings_service
        self._bookmarks = bookmarks
        self._lock = asyncio.Lock()
        self._profiles: Dict[str, ReaderProfile] = {}
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._profiles = {}
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read profiles file %s: %s", self._path, exc)
            self._profiles = {}
            return

        items = raw.get("profiles", []) if isinstance(raw, dict) else []
        loaded: Dict[str, ReaderProfile] = {}
        for item in items:
            try:
                profile = ReaderProfile.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid profile entry: %s", exc)
                continue
            loaded[profile.name] = profile
        self._profiles = loaded

    def _save_to_disk(self) -> None:
        payload = {
            "profiles": [
                profile.model_dump(mode="json") for profile in self._profiles.values()
            ]
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.write_text(serialized + "\n", encoding="utf-8")

    async def list_profiles(self) -> List[ProfileListItem]:
        async with self._lock:
            items = [
                ProfileListItem(
                    name=profile.name,
                    provider=profile.settings.provider.value,
                    bookmark_count=len(profile.bookmarks),
                    updated_at=profile.updated_at,
                )
                for profile in self._profiles.values()
            ]
            items.sort(key=lambda item: item.name.lower())
            return items

    async def get_profile(self, name: str) -> ReaderProfile:
        async with self._lock:
            profile = self._profiles.get(name)
            if profile is None:
                raise KeyError(f"Unknown profile: {name}")
            return profile.model_copy(deep=True)

    async def save_current(self, name: str, *, overwrite: bool = False) -> ReaderProfile:
        """Capture current settings and bookmarks as ``name``.

        Raises ValueError when the name is taken and ``overwrite`` is False.
        """
        name = name.strip()
        if not name:
            raise ValueError("Profile name must not be empty")
        settings = self._settings_service.get_settings()
        bookmarks = await self._bookmarks.list()

        async with self._lock:
            existing = self._profiles.get(name)
            if existing is not None and not overwrite:
                raise ValueError(f"Profile already exists: {name}")
            now = datetime.now(timezone.utc)
            profile = ReaderProfile(
                name=name,
                settings=settings.model_copy(deep=True),
                bookmarks=bookmarks,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._profiles[name] = profile
            await asyncio.to_thread(self._save_to_disk)
        logger.info("Saved profile %s", name)
        return profile.model_copy(deep=True)

    async def delete(self, name: str) -> bool:
        async with self._lock:
            if name not in self._profiles:
                return False
            self._profiles.pop(name)
            await asyncio.to_thread(self._save_to_disk)
        logger.info("Deleted profile %s", name)
        return True

    async def apply(self, name: str) -> ReaderProfile:
        """Persist the profile's settings and replace the bookmarks with its own.

        The caller is responsible for stopping playback first and for pushing
        the new settings into the running controller.
        """
        profile = await self.get_profile(name)
        self._settings_service.replace_settings(profile.settings)
        await self._bookmarks.replace(profile.bookmarks)
        logger.info("Applied profile %s", name)
        return profile


__all__ = ["ProfileService"]
