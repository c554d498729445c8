"""Service wiring: one explicit object holding every collaborator.

Built once per process (API lifespan / Celery worker) and passed by
reference; tests build their own with fakes.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta

from tweetcache.cache_store import TweetCacheStore
from tweetcache.config import Settings
from tweetcache.db import build_engine, build_session_factory
from tweetcache.orchestrator import FetchOrchestrator
from tweetcache.rate_limit import (
    InMemoryRateStateStore,
    RateLimitGate,
    RateStateStore,
    RedisRateStateStore,
)
from tweetcache.reaper import StorageReaper
from tweetcache.selection import SelectionEngine
from tweetcache.storage.backends import (
    BlobBackend,
    InMemoryBlobBackend,
    LocalBlobBackend,
    SqlBlobBackend,
)
from tweetcache.upstream import UpstreamFetcher, XSearchClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    gate: RateLimitGate
    store: TweetCacheStore
    reaper: StorageReaper
    engine: SelectionEngine
    fetcher: UpstreamFetcher
    orchestrator: FetchOrchestrator


def build_blob_backend(settings: Settings, *, pooled_db: bool = True) -> BlobBackend:
    kind = settings.STORAGE_BACKEND.lower()
    if kind == "memory":
        return InMemoryBlobBackend()
    if kind == "local":
        return LocalBlobBackend(settings.STORAGE_LOCAL_DIR)
    if kind == "sql":
        engine = build_engine(settings.DATABASE_URL, pooled=pooled_db)
        return SqlBlobBackend(build_session_factory(engine))
    raise ValueError(f"Unknown STORAGE_BACKEND {settings.STORAGE_BACKEND!r}")


def build_rate_store(settings: Settings) -> RateStateStore:
    kind = settings.RATE_STATE_BACKEND.lower()
    if kind == "memory":
        return InMemoryRateStateStore()
    if kind == "redis":
        return RedisRateStateStore.from_url(settings.REDIS_URL, window=timedelta(seconds=settings.RATE_WINDOW_S))
    raise ValueError(f"Unknown RATE_STATE_BACKEND {settings.RATE_STATE_BACKEND!r}")


def build_services(
    settings: Settings,
    *,
    backend: BlobBackend | None = None,
    rate_store: RateStateStore | None = None,
    fetcher: UpstreamFetcher | None = None,
    rng: random.Random | None = None,
    pooled_db: bool = True,
) -> Services:
    gate = RateLimitGate(
        rate_store or build_rate_store(settings),
        window=timedelta(seconds=settings.RATE_WINDOW_S),
        ceilings=settings.RATE_LIMIT_CEILINGS,
    )
    store = TweetCacheStore(
        backend or build_blob_backend(settings, pooled_db=pooled_db),
        prefix=settings.SNAPSHOT_PREFIX,
        selection_key=settings.SELECTION_KEY,
        max_items=settings.MAX_ITEMS,
    )
    reaper = StorageReaper(store)
    engine = SelectionEngine(store, count=settings.SELECT_COUNT, rng=rng)
    fetcher = fetcher or XSearchClient(
        bearer_token=settings.TWITTER_BEARER_TOKEN,
        base_url=settings.TWITTER_API_BASE_URL,
        timeout=settings.UPSTREAM_TIMEOUT_S,
        page_size=settings.UPSTREAM_PAGE_SIZE,
    )
    orchestrator = FetchOrchestrator(
        gate=gate,
        store=store,
        reaper=reaper,
        engine=engine,
        fetcher=fetcher,
        username=settings.TWITTER_USERNAME,
        budget_mb=settings.STORAGE_BUDGET_MB,
        timeout_s=settings.PIPELINE_TIMEOUT_S,
    )
    logger.info(
        "Services built",
        extra={"storage_backend": settings.STORAGE_BACKEND, "rate_state_backend": settings.RATE_STATE_BACKEND},
    )
    return Services(
        settings=settings,
        gate=gate,
        store=store,
        reaper=reaper,
        engine=engine,
        fetcher=fetcher,
        orchestrator=orchestrator,
    )
