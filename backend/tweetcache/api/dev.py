"""Development-only operator endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from tweetcache.api.deps import get_services, verify_bearer
from tweetcache.errors import AuthError
from tweetcache.services import Services

router = APIRouter(prefix="/api/dev", tags=["dev"])
logger = logging.getLogger(__name__)


@router.post("/reset-rate-limits")
async def reset_rate_limits(request: Request, services: Services = Depends(get_services)) -> dict[str, str]:
    """Clear cooldown and budget for the upstream endpoint. Hidden in production."""
    if services.settings.is_production:
        raise HTTPException(status_code=404, detail="Not Found")
    try:
        verify_bearer(request.headers.get("authorization"), services.settings.CRON_SECRET)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail="Unauthorized") from exc

    endpoint = services.fetcher.endpoint
    services.gate.reset(endpoint)
    logger.warning("Rate limits reset via dev endpoint", extra={"step": "rate-reset", "endpoint": endpoint})
    return {"status": "reset", "endpoint": endpoint}
