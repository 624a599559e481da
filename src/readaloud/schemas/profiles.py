"""Named profiles: a reader settings snapshot plus its bookmarks."""

from datetime import datetime, timezone
from typing import List

from pydantic import BaseModel, Field

from .reader_settings import ReaderSettings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReaderProfile(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    settings: ReaderSettings = Field(default_factory=ReaderSettings)
    bookmarks: List[int] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ProfileListItem(BaseModel):
    name: str
    provider: str
    bookmark_count: int
    updated_at: datetime


class ProfileCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    overwrite: bool = Field(
        default=False,
        description="Replace an existing profile with the same name.",
    )


__all__ = ["ProfileCreatePayload", "ProfileListItem", "ReaderProfile"]
