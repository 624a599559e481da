"""Request and response payloads of the playback API."""

from typing import List, Optional

from pydantic import BaseModel, Field


class LoadTextPayload(BaseModel):
    text: str = Field(..., description="Full text to read aloud.")


class PlayPayload(BaseModel):
    chunk_index: int = Field(default=0, ge=0)
    resume_position_ms: Optional[int] = Field(default=None, ge=0)


class RetryDecisionPayload(BaseModel):
    retry: bool


class ChunkInfo(BaseModel):
    index: int
    start_offset: int
    end_offset: int
    text: str
    duration_millis: Optional[int] = None


class ResumeOfferPayload(BaseModel):
    chunk_start_offset: int
    position_ms: int


class LoadTextResponse(BaseModel):
    chunks: List[ChunkInfo]
    resume_offer: Optional[ResumeOfferPayload] = None


class PendingPrompt(BaseModel):
    prompt_id: str
    chunk_number: int
    message: str


class PlaybackSnapshot(BaseModel):
    """Consistent view of the playback state at one instant."""

    state: str
    session_id: Optional[str] = None
    chunk_count: int = 0
    start_index: int = 0
    currently_playing_index: int = -1
    highlighted_char_index: int = -1
    playback_speed: float = 1.0
    pending_prompts: List[PendingPrompt] = Field(default_factory=list)
    last_error: Optional[str] = None


class StartPlaybackResponse(BaseModel):
    started: bool
    snapshot: PlaybackSnapshot


__all__ = [
    "ChunkInfo",
    "LoadTextPayload",
    "LoadTextResponse",
    "PendingPrompt",
    "PlayPayload",
    "PlaybackSnapshot",
    "ResumeOfferPayload",
    "RetryDecisionPayload",
    "StartPlaybackResponse",
]
