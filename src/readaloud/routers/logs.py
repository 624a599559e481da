"""API routes for the user-facing error log."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from ..services.error_log import ErrorLogStore

router = APIRouter(prefix="/api/logs", tags=["logs"])


def get_error_log(request: Request) -> ErrorLogStore:
    store = getattr(request.app.state, "error_log", None)
    if store is None:  # pragma: no cover - defensive
        raise RuntimeError("Error log is not configured")
    return store


@router.get("/errors", response_model=List[str])
async def read_errors(
    limit: Optional[int] = Query(default=None, ge=1),
    store: ErrorLogStore = Depends(get_error_log),
) -> List[str]:
    """Newest first."""
    return await store.entries(limit)


@router.delete("/errors", status_code=204)
async def clear_errors(store: ErrorLogStore = Depends(get_error_log)) -> Response:
    await store.clear()
    return Response(status_code=204)


__all__ = ["router"]
