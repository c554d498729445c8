from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from tweetcache.cache_store import Failure, NotFound
from tweetcache.config import Settings
from tweetcache.errors import ConfigError, StorageError, UpstreamError
from tweetcache.orchestrator import Cycle, CycleOutcome, CycleState
from tweetcache.rate_limit import InMemoryRateStateStore, UpstreamBudget
from tweetcache.schemas.item import Item
from tweetcache.services import build_services
from tweetcache.storage.backends import InMemoryBlobBackend
from tweetcache.upstream import SEARCH_ENDPOINT, SearchResult

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeFetcher:
    endpoint = SEARCH_ENDPOINT

    def __init__(self, items=None, *, error=None, budget=None, delay=0.0, config_error=None):
        self.config_error = config_error
        self.items = items or []
        self.error = error
        self.budget = budget
        self.delay = delay
        self.queries: list[str] = []

    def check_config(self):
        if self.config_error is not None:
            raise self.config_error

    async def search(self, query, *, fetched_at):
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SearchResult(items=list(self.items), budget=self.budget)


class _UnwritableBackend(InMemoryBlobBackend):
    async def put(self, key, body):
        raise StorageError("read-only bucket", operation="put")


def _items(n: int, *, with_entities: int = 0) -> list[Item]:
    items = []
    for i in range(n):
        raw = {"id": str(i), "text": f"post {i}", "created_at": "2025-03-01T11:00:00Z"}
        if i < with_entities:
            raw["entities"] = {"urls": [{"url": f"https://t.co/{i}"}]}
        items.append(Item.from_raw(raw))
    return items


def _services(fetcher, *, backend=None, **overrides):
    settings = Settings(TWITTER_USERNAME="@someone", TWITTER_BEARER_TOKEN="unused", **overrides)
    return build_services(
        settings,
        backend=backend or InMemoryBlobBackend(),
        rate_store=InMemoryRateStateStore(),
        fetcher=fetcher,
        rng=random.Random(0),
    )


def test_successful_cycle_caches_and_selects() -> None:
    fetcher = _FakeFetcher(_items(6, with_entities=5), budget=UpstreamBudget(remaining=449, reset_at=T0 + timedelta(minutes=15)))
    services = _services(fetcher)

    async def _run():
        result = await services.orchestrator.run(T0)
        return result, await services.store.get_latest(), await services.store.get_selection()

    result, latest, selection = asyncio.run(_run())
    assert result.outcome == CycleOutcome.SUCCESS
    assert result.message == "Tweets fetched and cached successfully"
    assert result.trail == [
        CycleState.IDLE,
        CycleState.RATE_CHECK,
        CycleState.FETCHING,
        CycleState.FETCHED,
        CycleState.CACHING,
        CycleState.REAPING,
        CycleState.SELECTING,
        CycleState.IDLE,
    ]
    assert result.tweet_count == 6
    assert result.selected_count == 4
    assert result.reap.deleted_count == 0
    assert fetcher.queries == ["from:someone -is:reply -is:retweet has:links"]
    assert latest.key == result.snapshot_key
    assert len(latest.items) == 6
    assert all(item.has_entities for item in selection.items)
    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) == T0
    assert services.gate.store.get_budget(SEARCH_ENDPOINT).remaining == 449


def test_second_trigger_inside_window_is_blocked_without_upstream_call() -> None:
    fetcher = _FakeFetcher(_items(2))
    services = _services(fetcher)

    async def _run():
        await services.orchestrator.run(T0)
        blocked = await services.orchestrator.run(T0 + timedelta(minutes=5))
        later = await services.orchestrator.run(T0 + timedelta(minutes=15, seconds=1))
        return blocked, later

    blocked, later = asyncio.run(_run())
    assert blocked.outcome == CycleOutcome.BLOCKED
    assert blocked.trail == [CycleState.IDLE, CycleState.RATE_CHECK, CycleState.BLOCKED, CycleState.IDLE]
    assert later.outcome == CycleOutcome.SUCCESS
    assert len(fetcher.queries) == 2


def test_empty_fetch_reports_no_data_and_leaves_cache_alone() -> None:
    services = _services(_FakeFetcher([]))

    async def _run():
        return await services.orchestrator.run(T0), await services.store.get_latest()

    result, latest = asyncio.run(_run())
    assert result.outcome == CycleOutcome.NO_DATA
    assert result.message == "No tweets found"
    assert result.trail[-2:] == [CycleState.FETCHED, CycleState.IDLE]
    assert latest == NotFound("empty")


def test_upstream_failure_still_records_attempt_and_budget() -> None:
    budget = UpstreamBudget(remaining=0, reset_at=T0 + timedelta(minutes=10))
    services = _services(_FakeFetcher(error=UpstreamError("HTTP 429", status_code=429, budget=budget)))

    with pytest.raises(UpstreamError):
        asyncio.run(services.orchestrator.run(T0))

    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) == T0
    assert services.gate.store.get_budget(SEARCH_ENDPOINT) == budget
    assert services.gate.can_request(SEARCH_ENDPOINT, T0 + timedelta(minutes=5)) is False


def test_missing_username_is_a_config_error_before_any_fetch() -> None:
    fetcher = _FakeFetcher(_items(1))
    services = _services(fetcher)
    services.orchestrator.username = "  "
    with pytest.raises(ConfigError):
        asyncio.run(services.orchestrator.run(T0))
    assert fetcher.queries == []
    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) is None


def test_cache_write_failure_skips_selection() -> None:
    services = _services(_FakeFetcher(_items(3)), backend=_UnwritableBackend())

    async def _run():
        return await services.orchestrator.run(T0), await services.store.get_selection()

    result, selection = asyncio.run(_run())
    assert result.outcome == CycleOutcome.CACHE_FAILED
    assert result.tweet_count == 3
    assert result.selected_count == 0
    assert result.trail[-2:] == [CycleState.CACHING, CycleState.IDLE]
    assert selection == NotFound("empty")


def test_deadline_expiry_raises_timeout_and_records_attempt() -> None:
    services = _services(_FakeFetcher(_items(1), delay=1.0), PIPELINE_TIMEOUT_S=0.05)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(services.orchestrator.run(T0))
    assert excinfo.value.step == "timeout"
    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) == T0


def test_reaper_runs_after_each_successful_write() -> None:
    services = _services(_FakeFetcher(_items(2)), STORAGE_BUDGET_MB=0.000001, RATE_WINDOW_S=1)

    async def _run():
        await services.orchestrator.run(T0)
        second = await services.orchestrator.run(T0 + timedelta(seconds=2))
        return second, await services.store.list_snapshots()

    second, snapshots = asyncio.run(_run())
    assert second.outcome == CycleOutcome.SUCCESS
    assert second.reap.deleted_count >= 1
    assert len(snapshots) <= 1
    assert not isinstance(asyncio.run(services.store.get_selection()), Failure)


def test_illegal_transition_is_rejected() -> None:
    cycle = Cycle()
    with pytest.raises(RuntimeError):
        cycle.advance(CycleState.CACHING)


def test_missing_bearer_token_fails_before_rate_state_is_touched() -> None:
    settings = Settings(TWITTER_USERNAME="someone", TWITTER_BEARER_TOKEN="")
    services = build_services(settings, backend=InMemoryBlobBackend(), rate_store=InMemoryRateStateStore())

    with pytest.raises(ConfigError):
        asyncio.run(services.orchestrator.run(T0))

    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) is None
    assert services.gate.can_request(SEARCH_ENDPOINT, T0 + timedelta(seconds=1)) is True


def test_fetcher_config_error_leaves_gate_open() -> None:
    fetcher = _FakeFetcher(_items(1), config_error=ConfigError("no token"))
    services = _services(fetcher)
    with pytest.raises(ConfigError):
        asyncio.run(services.orchestrator.run(T0))
    assert fetcher.queries == []
    assert services.gate.store.get_last_request(SEARCH_ENDPOINT) is None
