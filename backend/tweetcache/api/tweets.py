"""Read side: current selection and latest snapshot."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from tweetcache.api.deps import get_services
from tweetcache.schemas.item import Failure, NotFound
from tweetcache.services import Services

router = APIRouter(prefix="/api/tweets", tags=["content"])


def _unwrap(result: Any, what: str) -> Any:
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=f"No {what} cached yet")
    if isinstance(result, Failure):
        raise HTTPException(status_code=503, detail=f"{what.capitalize()} storage unavailable")
    return result


@router.get("/selected")
async def get_selected(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Current selection; filled from the latest snapshot when empty, rotated once a window old."""
    max_age = timedelta(seconds=services.settings.RATE_WINDOW_S)
    current = await services.engine.current(datetime.now(timezone.utc), max_age=max_age)
    selection = _unwrap(current, "selection")
    return selection.to_wire()


@router.get("/latest")
async def get_latest(services: Services = Depends(get_services)) -> dict[str, Any]:
    snapshot = _unwrap(await services.store.get_latest(), "snapshot")
    return snapshot.to_wire()
