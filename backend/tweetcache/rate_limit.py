"""Upstream rate gate.

Two independent checks must both pass before an upstream call:

* a local cooldown: at most one attempt per endpoint per window, recorded
  after every attempt regardless of outcome;
* the upstream-reported budget (``x-rate-limit-remaining`` /
  ``x-rate-limit-reset``), when one has been seen.

The gate never waits. A ``False`` answer means "defer to the next trigger".
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

import redis

from tweetcache.metrics import RATE_GATE_DECISIONS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=15)
DEFAULT_CEILING_KEY = "default"


@dataclass(frozen=True)
class UpstreamBudget:
    remaining: int
    reset_at: datetime

    def exhausted_at(self, now: datetime) -> bool:
        return self.remaining <= 0 and now < self.reset_at


class RateStateStore(ABC):
    """Persistence for per-endpoint rate state."""

    @abstractmethod
    def get_last_request(self, endpoint: str) -> datetime | None: ...

    @abstractmethod
    def set_last_request(self, endpoint: str, at: datetime) -> None: ...

    @abstractmethod
    def get_budget(self, endpoint: str) -> UpstreamBudget | None: ...

    @abstractmethod
    def set_budget(self, endpoint: str, budget: UpstreamBudget) -> None: ...

    @abstractmethod
    def clear(self, endpoint: str) -> None: ...


class InMemoryRateStateStore(RateStateStore):
    """Process-local state; fine for a single worker and for tests."""

    def __init__(self):
        self._last: dict[str, datetime] = {}
        self._budgets: dict[str, UpstreamBudget] = {}

    def get_last_request(self, endpoint: str) -> datetime | None:
        return self._last.get(endpoint)

    def set_last_request(self, endpoint: str, at: datetime) -> None:
        self._last[endpoint] = at

    def get_budget(self, endpoint: str) -> UpstreamBudget | None:
        return self._budgets.get(endpoint)

    def set_budget(self, endpoint: str, budget: UpstreamBudget) -> None:
        self._budgets[endpoint] = budget

    def clear(self, endpoint: str) -> None:
        self._last.pop(endpoint, None)
        self._budgets.pop(endpoint, None)


class RedisRateStateStore(RateStateStore):
    """Shared state in Redis so every worker sees the same cooldown.

    Read failures are logged and read as "no record"; write failures are
    logged and dropped. Keys expire after two windows.
    """

    def __init__(self, client: redis.Redis, *, window: timedelta = DEFAULT_WINDOW, namespace: str = "tweetcache:rl"):
        self._r = client
        self._ttl = int(window.total_seconds() * 2)
        self._ns = namespace

    @classmethod
    def from_url(cls, url: str, *, window: timedelta = DEFAULT_WINDOW) -> "RedisRateStateStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), window=window)

    def _key(self, endpoint: str, kind: str) -> str:
        return f"{self._ns}:{endpoint}:{kind}"

    def get_last_request(self, endpoint: str) -> datetime | None:
        try:
            raw = self._r.get(self._key(endpoint, "last"))
        except redis.RedisError as exc:
            logger.warning("Rate state read failed for %s: %s", endpoint, exc, extra={"step": "rate-check"})
            return None
        if not raw:
            return None
        try:
            return datetime.fromisoformat(str(raw))
        except ValueError:
            logger.warning("Discarding malformed last-request stamp for %s: %r", endpoint, raw)
            return None

    def set_last_request(self, endpoint: str, at: datetime) -> None:
        try:
            self._r.set(self._key(endpoint, "last"), at.isoformat(), ex=self._ttl)
        except redis.RedisError as exc:
            logger.warning("Rate state write failed for %s: %s", endpoint, exc, extra={"step": "rate-record"})

    def get_budget(self, endpoint: str) -> UpstreamBudget | None:
        try:
            raw = self._r.get(self._key(endpoint, "budget"))
        except redis.RedisError as exc:
            logger.warning("Rate budget read failed for %s: %s", endpoint, exc, extra={"step": "rate-check"})
            return None
        if not raw:
            return None
        try:
            row = json.loads(raw)
            return UpstreamBudget(
                remaining=int(row["remaining"]),
                reset_at=datetime.fromisoformat(str(row["reset_at"])),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed rate budget for %s: %r", endpoint, raw)
            return None

    def set_budget(self, endpoint: str, budget: UpstreamBudget) -> None:
        payload = json.dumps({"remaining": budget.remaining, "reset_at": budget.reset_at.isoformat()})
        try:
            self._r.set(self._key(endpoint, "budget"), payload, ex=self._ttl)
        except redis.RedisError as exc:
            logger.warning("Rate budget write failed for %s: %s", endpoint, exc, extra={"step": "rate-record"})

    def clear(self, endpoint: str) -> None:
        try:
            self._r.delete(self._key(endpoint, "last"), self._key(endpoint, "budget"))
        except redis.RedisError as exc:
            logger.warning("Rate state reset failed for %s: %s", endpoint, exc, extra={"step": "rate-reset"})


class RateLimitGate:
    """Answers "may we call `endpoint` right now?" without ever blocking."""

    def __init__(
        self,
        store: RateStateStore,
        *,
        window: timedelta = DEFAULT_WINDOW,
        ceilings: dict[str, int] | None = None,
    ):
        self.store = store
        self.window = window
        self.ceilings = dict(ceilings or {DEFAULT_CEILING_KEY: 100})

    def ceiling_for(self, endpoint: str) -> int:
        return int(self.ceilings.get(endpoint, self.ceilings.get(DEFAULT_CEILING_KEY, 100)))

    def can_request(self, endpoint: str, now: datetime) -> bool:
        last = self.store.get_last_request(endpoint)
        if last is not None and now - last < self.window:
            logger.info(
                "Rate gate: cooldown active for %s (last attempt %s)",
                endpoint,
                last.isoformat(),
                extra={"step": "rate-check", "endpoint": endpoint},
            )
            RATE_GATE_DECISIONS_TOTAL.labels(endpoint=endpoint, decision="cooldown").inc()
            return False

        budget = self.store.get_budget(endpoint)
        if budget is not None and budget.exhausted_at(now):
            logger.warning(
                "Rate gate: upstream budget exhausted for %s until %s",
                endpoint,
                budget.reset_at.isoformat(),
                extra={"step": "rate-check", "endpoint": endpoint},
            )
            RATE_GATE_DECISIONS_TOTAL.labels(endpoint=endpoint, decision="budget_exhausted").inc()
            return False

        RATE_GATE_DECISIONS_TOTAL.labels(endpoint=endpoint, decision="allowed").inc()
        return True

    def record_request(self, endpoint: str, now: datetime) -> None:
        self.store.set_last_request(endpoint, now)

    def record_budget(self, endpoint: str, budget: UpstreamBudget) -> None:
        self.store.set_budget(endpoint, budget)

    def remaining(self, endpoint: str, now: datetime) -> int:
        """Effective remaining budget, counting an expired window as full."""
        budget = self.store.get_budget(endpoint)
        if budget is None or now >= budget.reset_at:
            return self.ceiling_for(endpoint)
        return budget.remaining

    def reset_if_expired(self, endpoint: str, now: datetime) -> bool:
        budget = self.store.get_budget(endpoint)
        if budget is None or now < budget.reset_at:
            return False
        self.store.set_budget(
            endpoint,
            UpstreamBudget(remaining=self.ceiling_for(endpoint), reset_at=now + self.window),
        )
        logger.info("Rate budget for %s reset after window expiry", endpoint, extra={"step": "rate-reset"})
        return True

    def reset(self, endpoint: str) -> None:
        self.store.clear(endpoint)
        logger.info("Rate state for %s cleared", endpoint, extra={"step": "rate-reset"})
