"""Playback control and the Server-Sent-Events notification channel."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..playback.controller import PlaybackController
from ..schemas.playback import (
    ChunkInfo,
    LoadTextPayload,
    LoadTextResponse,
    PlaybackSnapshot,
    PlayPayload,
    ResumeOfferPayload,
    RetryDecisionPayload,
    StartPlaybackResponse,
)
from ..tts.errors import ConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/playback", tags=["playback"])

_KEEPALIVE_SECONDS = 15


def get_playback_controller(request: Request) -> PlaybackController:
    controller = getattr(request.app.state, "playback_controller", None)
    if controller is None:  # pragma: no cover - defensive
        raise RuntimeError("Playback controller is not configured")
    return controller


async def _start(controller: PlaybackController, coro) -> StartPlaybackResponse:
    try:
        started = await coro
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (ValueError, IndexError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return StartPlaybackResponse(started=started, snapshot=controller.snapshot())


@router.put("/text", response_model=LoadTextResponse)
async def load_text(
    payload: LoadTextPayload,
    controller: PlaybackController = Depends(get_playback_controller),
) -> LoadTextResponse:
    result = await controller.load_text(payload.text)
    offer = result.resume_offer
    return LoadTextResponse(
        chunks=[
            ChunkInfo(
                index=index,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                text=chunk.text,
                duration_millis=chunk.duration_millis,
            )
            for index, chunk in enumerate(result.chunks)
        ],
        resume_offer=(
            ResumeOfferPayload(
                chunk_start_offset=offer.chunk_start_offset,
                position_ms=offer.position_ms,
            )
            if offer is not None
            else None
        ),
    )


@router.post("/speak", response_model=StartPlaybackResponse)
async def speak_from_start(
    controller: PlaybackController = Depends(get_playback_controller),
) -> StartPlaybackResponse:
    return await _start(controller, controller.speak_from_start(wait=False))


@router.post("/play", response_model=StartPlaybackResponse)
async def play(
    payload: PlayPayload,
    controller: PlaybackController = Depends(get_playback_controller),
) -> StartPlaybackResponse:
    return await _start(
        controller,
        controller.play(payload.chunk_index, payload.resume_position_ms, wait=False),
    )


@router.post("/jump/{index}", response_model=StartPlaybackResponse)
async def jump_to_chunk(
    index: int,
    controller: PlaybackController = Depends(get_playback_controller),
) -> StartPlaybackResponse:
    return await _start(controller, controller.jump_to_chunk(index, wait=False))


@router.post("/resume-saved", response_model=StartPlaybackResponse)
async def resume_saved(
    controller: PlaybackController = Depends(get_playback_controller),
) -> StartPlaybackResponse:
    return await _start(controller, controller.resume_saved(wait=False))


@router.post("/pause", response_model=PlaybackSnapshot)
async def pause(
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    await controller.pause()
    return controller.snapshot()


@router.post("/resume", response_model=PlaybackSnapshot)
async def resume(
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    await controller.resume()
    return controller.snapshot()


@router.post("/stop", response_model=PlaybackSnapshot)
async def stop(
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    await controller.stop()
    return controller.snapshot()


@router.post("/background", response_model=PlaybackSnapshot)
async def background(
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    """Called by clients going to the background; persists the position."""
    await controller.on_background()
    return controller.snapshot()


@router.post("/retry/{prompt_id}", response_model=PlaybackSnapshot)
async def answer_retry_prompt(
    prompt_id: str,
    payload: RetryDecisionPayload,
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    try:
        controller.resolve_retry_prompt(prompt_id, payload.retry)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Retry prompt not found") from exc
    return controller.snapshot()


@router.get("/state", response_model=PlaybackSnapshot)
async def read_state(
    controller: PlaybackController = Depends(get_playback_controller),
) -> PlaybackSnapshot:
    return controller.snapshot()


@router.get("/events", response_model=None)
async def stream_events(
    request: Request,
    controller: PlaybackController = Depends(get_playback_controller),
) -> EventSourceResponse:
    """Stream playback events; the first event is the current snapshot."""

    queue = controller.events.subscribe()

    async def event_publisher():
        try:
            yield {"event": "snapshot", "data": controller.snapshot().model_dump_json()}
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    continue
                yield event.as_sse()
        finally:
            controller.events.unsubscribe(queue)

    return EventSourceResponse(event_publisher(), ping=_KEEPALIVE_SECONDS)


__all__ = ["get_playback_controller", "router"]
