"""Beat-driven fetch cycle task."""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

from tweetcache.celery_app import celery
from tweetcache.config import settings
from tweetcache.errors import ConfigError, UpstreamError
from tweetcache.services import Services, build_services

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_worker_services() -> Services:
    return build_services(settings, pooled_db=False)


@celery.task(name="tweetcache.workers.fetch.run_fetch_cycle")
def run_fetch_cycle() -> dict[str, Any]:
    """Run one cycle. Failures are logged and left for the next beat tick."""
    services = get_worker_services()
    try:
        result = asyncio.run(services.orchestrator.run())
    except (ConfigError, UpstreamError) as exc:
        logger.error("Fetch cycle failed: %s", exc, extra={"step": exc.step})
        return {"outcome": "error", "error": str(exc)}

    return {
        "outcome": result.outcome.value,
        "message": result.message,
        "tweetCount": result.tweet_count,
        "selectedCount": result.selected_count,
        "trail": [state.value for state in result.trail],
    }
