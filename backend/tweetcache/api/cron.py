"""Scheduler trigger endpoint.

``GET /api/cron/fetch-tweets`` runs one fetch cycle. The scheduler
authenticates with ``Authorization: Bearer <CRON_SECRET>``.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from tweetcache.api.deps import get_services, verify_bearer
from tweetcache.config import Settings
from tweetcache.errors import AuthError, ConfigError, UpstreamError
from tweetcache.orchestrator import CycleOutcome
from tweetcache.services import Services

router = APIRouter(prefix="/api/cron", tags=["cron"])
logger = logging.getLogger(__name__)


def error_response(exc: Exception, settings: Settings) -> PlainTextResponse:
    """500 with the error message outside production, a generic one inside."""
    body = "Internal Server Error" if settings.is_production else (str(exc) or "Internal Server Error")
    return PlainTextResponse(body, status_code=500)


@router.get("/fetch-tweets")
async def fetch_tweets(request: Request, services: Services = Depends(get_services)) -> Response:
    authorization = request.headers.get("authorization")
    try:
        verify_bearer(authorization, services.settings.CRON_SECRET)
    except AuthError as exc:
        logger.error(
            "Unauthorized cron request: %s",
            exc,
            extra={"step": exc.step, "has_auth": bool(authorization)},
        )
        return PlainTextResponse("Unauthorized", status_code=401)

    logger.info("Starting tweet fetch", extra={"step": "start"})
    try:
        result = await services.orchestrator.run()
    except (ConfigError, UpstreamError) as exc:
        logger.error("Job failed: %s", exc, extra={"step": exc.step})
        return error_response(exc, services.settings)
    except Exception as exc:
        logger.exception("Job failed unexpectedly", extra={"step": "error"})
        return error_response(exc, services.settings)

    if result.outcome == CycleOutcome.NO_DATA:
        return PlainTextResponse(result.message, status_code=404)

    return JSONResponse(
        {
            "message": result.message,
            "tweetCount": result.tweet_count,
            "selectedCount": result.selected_count,
        }
    )
