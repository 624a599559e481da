"""API routes for named reader profiles (save/apply/delete)."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from ..playback.controller import PlaybackController
from ..schemas.profiles import ProfileCreatePayload, ProfileListItem, ReaderProfile
from ..services.profiles import ProfileService
from .playback import get_playback_controller

router = APIRouter(prefix="/api/profiles", tags=["profiles"])


def get_profile_service(request: Request) -> ProfileService:
    service = getattr(request.app.state, "profile_service", None)
    if service is None:  # pragma: no cover - defensive
        raise RuntimeError("Profile service is not configured")
    return service


@router.get("", response_model=List[ProfileListItem])
async def list_profiles(
    service: ProfileService = Depends(get_profile_service),
) -> List[ProfileListItem]:
    return await service.list_profiles()


@router.get("/{name}", response_model=ReaderProfile)
async def read_profile(
    name: str,
    service: ProfileService = Depends(get_profile_service),
) -> ReaderProfile:
    try:
        return await service.get_profile(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown profile: {name}") from exc


@router.post("", response_model=ReaderProfile)
async def save_profile(
    payload: ProfileCreatePayload,
    service: ProfileService = Depends(get_profile_service),
) -> ReaderProfile:
    try:
        return await service.save_current(payload.name, overwrite=payload.overwrite)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/{name}/apply", response_model=ReaderProfile)
async def apply_profile(
    name: str,
    service: ProfileService = Depends(get_profile_service),
    controller: PlaybackController = Depends(get_playback_controller),
) -> ReaderProfile:
    """Stop playback, then switch settings and bookmarks to the profile's."""
    await controller.stop()
    try:
        profile = await service.apply(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown profile: {name}") from exc
    await controller.apply_settings(profile.settings)
    return profile


@router.delete("/{name}", response_model=dict)
async def delete_profile(
    name: str,
    service: ProfileService = Depends(get_profile_service),
) -> dict:
    deleted = await service.delete(name)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Unknown profile: {name}")
    return {"deleted": deleted}


__all__ = ["router"]
