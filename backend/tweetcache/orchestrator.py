"""Fetch cycle orchestration.

One invocation = one pass through::

    IDLE -> RATE_CHECK -> BLOCKED -> IDLE
                       -> FETCHING -> FETCH_FAILED -> IDLE
                                   -> FETCHED -> IDLE (no data)
                                              -> CACHING -> IDLE (cache write failed)
                                                         -> REAPING -> SELECTING -> IDLE

There is no retry inside a cycle; the next scheduled trigger is the retry.
Overlapping invocations are not serialised: the selection slot and the rate
state are last-writer-wins.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from tweetcache.cache_store import TweetCacheStore
from tweetcache.errors import ConfigError, StorageError, UpstreamError
from tweetcache.metrics import FETCH_CYCLES_TOTAL
from tweetcache.rate_limit import RateLimitGate
from tweetcache.reaper import DEFAULT_BUDGET_MB, ReapResult, StorageReaper
from tweetcache.selection import SelectionEngine
from tweetcache.upstream import SearchResult, UpstreamFetcher, build_query

logger = logging.getLogger(__name__)


class CycleState(str, enum.Enum):
    IDLE = "IDLE"
    RATE_CHECK = "RATE_CHECK"
    BLOCKED = "BLOCKED"
    FETCHING = "FETCHING"
    FETCH_FAILED = "FETCH_FAILED"
    FETCHED = "FETCHED"
    CACHING = "CACHING"
    REAPING = "REAPING"
    SELECTING = "SELECTING"


class CycleOutcome(str, enum.Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    NO_DATA = "no_data"
    CACHE_FAILED = "cache_failed"
    FETCH_FAILED = "fetch_failed"


# A deadline can expire in any active state; it is reported as a fetch failure.
_ACTIVE = {CycleState.FETCHING, CycleState.FETCHED, CycleState.CACHING, CycleState.REAPING, CycleState.SELECTING}

TRANSITIONS: dict[CycleState, set[CycleState]] = {
    CycleState.IDLE: {CycleState.RATE_CHECK},
    CycleState.RATE_CHECK: {CycleState.BLOCKED, CycleState.FETCHING},
    CycleState.BLOCKED: {CycleState.IDLE},
    CycleState.FETCHING: {CycleState.FETCH_FAILED, CycleState.FETCHED},
    CycleState.FETCH_FAILED: {CycleState.IDLE},
    CycleState.FETCHED: {CycleState.CACHING, CycleState.IDLE},
    CycleState.CACHING: {CycleState.REAPING, CycleState.IDLE},
    CycleState.REAPING: {CycleState.SELECTING},
    CycleState.SELECTING: {CycleState.IDLE},
}

MESSAGES = {
    CycleOutcome.SUCCESS: "Tweets fetched and cached successfully",
    CycleOutcome.BLOCKED: "Rate limited; deferring to next scheduled run",
    CycleOutcome.NO_DATA: "No tweets found",
    CycleOutcome.CACHE_FAILED: "Tweets fetched but cache write failed; selection skipped",
    CycleOutcome.FETCH_FAILED: "Fetch failed",
}


class Cycle:
    """State trail for a single invocation."""

    def __init__(self):
        self.trail: list[CycleState] = [CycleState.IDLE]

    @property
    def state(self) -> CycleState:
        return self.trail[-1]

    def advance(self, target: CycleState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal cycle transition {self.state.value} -> {target.value}")
        self.trail.append(target)

    def fail(self) -> None:
        if self.state in _ACTIVE:
            self.trail.append(CycleState.FETCH_FAILED)
        if self.state != CycleState.IDLE:
            self.trail.append(CycleState.IDLE)


@dataclass
class CycleResult:
    outcome: CycleOutcome
    trail: list[CycleState] = field(default_factory=list)
    tweet_count: int = 0
    selected_count: int = 0
    snapshot_key: str | None = None
    reap: ReapResult | None = None

    @property
    def message(self) -> str:
        return MESSAGES[self.outcome]


class FetchOrchestrator:
    def __init__(
        self,
        *,
        gate: RateLimitGate,
        store: TweetCacheStore,
        reaper: StorageReaper,
        engine: SelectionEngine,
        fetcher: UpstreamFetcher,
        username: str,
        budget_mb: float = DEFAULT_BUDGET_MB,
        timeout_s: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gate = gate
        self.store = store
        self.reaper = reaper
        self.engine = engine
        self.fetcher = fetcher
        self.username = username
        self.budget_mb = budget_mb
        self.timeout_s = timeout_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, now: datetime | None = None) -> CycleResult:
        """Run one fetch cycle. Raises ConfigError before touching rate state, UpstreamError after; everything else is an outcome."""
        now = now or self._clock()
        username = (self.username or "").strip().lstrip("@")
        if not username:
            logger.error("Twitter username not configured", extra={"step": "config-error"})
            raise ConfigError("Twitter username not configured")
        try:
            self.fetcher.check_config()
        except ConfigError as exc:
            logger.error("Upstream client misconfigured: %s", exc, extra={"step": exc.step})
            raise

        cycle = Cycle()
        started = time.monotonic()
        try:
            if self.timeout_s:
                result = await asyncio.wait_for(self._run(cycle, username, now, started), timeout=self.timeout_s)
            else:
                result = await self._run(cycle, username, now, started)
        except asyncio.TimeoutError as exc:
            cycle.fail()
            FETCH_CYCLES_TOTAL.labels(outcome=CycleOutcome.FETCH_FAILED.value).inc()
            logger.error(
                "Fetch cycle exceeded %.1fs deadline",
                self.timeout_s,
                extra={"step": "timeout", "trail": [s.value for s in cycle.trail]},
            )
            raise UpstreamError(f"Fetch cycle exceeded {self.timeout_s}s deadline", step="timeout") from exc

        FETCH_CYCLES_TOTAL.labels(outcome=result.outcome.value).inc()
        return result

    async def _fetch(self, endpoint: str, query: str, now: datetime) -> SearchResult:
        budget = None
        try:
            result = await self.fetcher.search(query, fetched_at=now)
            budget = result.budget
            return result
        except UpstreamError as exc:
            budget = exc.budget
            raise
        finally:
            self.gate.record_request(endpoint, now)
            if budget is not None:
                self.gate.record_budget(endpoint, budget)

    async def _run(self, cycle: Cycle, username: str, now: datetime, started: float) -> CycleResult:
        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        endpoint = self.fetcher.endpoint
        cycle.advance(CycleState.RATE_CHECK)
        self.gate.reset_if_expired(endpoint, now)
        if not self.gate.can_request(endpoint, now):
            cycle.advance(CycleState.BLOCKED)
            cycle.advance(CycleState.IDLE)
            logger.info("Fetch blocked by rate gate", extra={"step": "rate-check", "endpoint": endpoint})
            return CycleResult(outcome=CycleOutcome.BLOCKED, trail=cycle.trail)

        cycle.advance(CycleState.FETCHING)
        query = build_query(username)
        try:
            search = await self._fetch(endpoint, query, now)
        except UpstreamError as exc:
            cycle.advance(CycleState.FETCH_FAILED)
            cycle.advance(CycleState.IDLE)
            FETCH_CYCLES_TOTAL.labels(outcome=CycleOutcome.FETCH_FAILED.value).inc()
            logger.error(
                "Search failed: %s",
                exc,
                extra={"step": exc.step, "query": query, "status_code": exc.status_code, "duration_ms": elapsed_ms()},
            )
            raise

        cycle.advance(CycleState.FETCHED)
        items = search.items
        logger.info(
            "Recent tweets fetched: %s",
            len(items),
            extra={
                "step": "tweets-fetched",
                "first_tweet_id": items[0].id if items else None,
                "last_tweet_id": items[-1].id if items else None,
                "meta": search.meta,
                "duration_ms": elapsed_ms(),
            },
        )
        if not items:
            cycle.advance(CycleState.IDLE)
            logger.warning("No tweets found", extra={"step": "no-tweets", "query": query})
            return CycleResult(outcome=CycleOutcome.NO_DATA, trail=cycle.trail)

        cycle.advance(CycleState.CACHING)
        try:
            snapshot = await self.store.put(items, now)
        except StorageError as exc:
            cycle.advance(CycleState.IDLE)
            logger.error("Cache write failed: %s", exc, extra={"step": "tweets-cached", "duration_ms": elapsed_ms()})
            return CycleResult(outcome=CycleOutcome.CACHE_FAILED, trail=cycle.trail, tweet_count=len(items))

        cycle.advance(CycleState.REAPING)
        reap = None
        try:
            reap = await self.reaper.reap(self.budget_mb)
        except StorageError as exc:
            logger.warning("Reap skipped: %s", exc, extra={"step": "reaping"})

        cycle.advance(CycleState.SELECTING)
        selected_count = 0
        try:
            selection = await self.engine.select_and_persist(snapshot.items, now)
            selected_count = len(selection.items)
        except StorageError as exc:
            logger.error("Selection write failed: %s", exc, extra={"step": "tweets-selected"})

        cycle.advance(CycleState.IDLE)
        logger.info(
            "Fetch cycle complete",
            extra={
                "step": "complete",
                "snapshot_key": snapshot.key,
                "tweet_count": len(items),
                "selected_count": selected_count,
                "duration_ms": elapsed_ms(),
            },
        )
        return CycleResult(
            outcome=CycleOutcome.SUCCESS,
            trail=cycle.trail,
            tweet_count=len(items),
            selected_count=selected_count,
            snapshot_key=snapshot.key,
            reap=reap,
        )
