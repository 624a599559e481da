"""API routes for bookmarks (chunk start offsets)."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from ..services.bookmarks import BookmarkStore

router = APIRouter(prefix="/api/bookmarks", tags=["bookmarks"])


class BookmarkToggleResponse(BaseModel):
    offset: int
    bookmarked: bool


def get_bookmark_store(request: Request) -> BookmarkStore:
    store = getattr(request.app.state, "bookmark_store", None)
    if store is None:  # pragma: no cover - defensive
        raise RuntimeError("Bookmark store is not configured")
    return store


@router.get("", response_model=List[int])
async def list_bookmarks(
    store: BookmarkStore = Depends(get_bookmark_store),
) -> List[int]:
    return await store.list()


@router.post("/{offset}/toggle", response_model=BookmarkToggleResponse)
async def toggle_bookmark(
    offset: int,
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkToggleResponse:
    bookmarked = await store.toggle(offset)
    return BookmarkToggleResponse(offset=offset, bookmarked=bookmarked)


@router.delete("/{offset}", status_code=204)
async def remove_bookmark(
    offset: int,
    store: BookmarkStore = Depends(get_bookmark_store),
) -> Response:
    await store.remove(offset)
    return Response(status_code=204)


@router.delete("", status_code=204)
async def clear_bookmarks(
    store: BookmarkStore = Depends(get_bookmark_store),
) -> Response:
    await store.clear()
    return Response(status_code=204)


__all__ = ["router"]
