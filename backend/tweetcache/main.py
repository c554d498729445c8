"""FastAPI application: cron trigger, read APIs, health and metrics."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from starlette.responses import PlainTextResponse, Response

from tweetcache.api.cron import router as cron_router
from tweetcache.api.dev import router as dev_router
from tweetcache.api.tweets import router as tweets_router
from tweetcache.config import Settings, settings as default_settings
from tweetcache.logging_config import setup_logging
from tweetcache.services import Services, build_services
from tweetcache.storage.backends import SqlBlobBackend

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: setup / teardown."""
        setup_logging(settings)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        backend = app.state.services.store.backend
        if isinstance(backend, SqlBlobBackend):
            await backend.create_schema()
        logger.info("Tweet cache API starting", extra={"env": settings.APP_ENV})
        yield
        logger.info("Tweet cache API shutting down")

    app = FastAPI(
        title="Tweet Cache",
        version="0.1.0",
        description="Rate-aware tweet cache and display selector",
        lifespan=lifespan,
    )
    app.state.services = services

    # ── CORS ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.APP_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(cron_router)
    app.include_router(tweets_router)
    app.include_router(dev_router)

    # ── Health ──
    @app.get("/health", tags=["ops"])
    async def health() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "ok", "service": "tweetcache"}

    # ── Prometheus Metrics ──
    @app.get("/metrics", tags=["ops"])
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        try:
            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            data = generate_latest(registry)
        except ValueError:
            # Not running in multiprocess mode
            data = generate_latest()
        return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
