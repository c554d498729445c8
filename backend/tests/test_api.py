from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from tweetcache.config import Settings
from tweetcache.errors import UpstreamError
from tweetcache.main import create_app
from tweetcache.rate_limit import InMemoryRateStateStore
from tweetcache.schemas.item import Item, SelectionSet
from tweetcache.services import build_services
from tweetcache.storage.backends import InMemoryBlobBackend
from tweetcache.upstream import SEARCH_ENDPOINT, SearchResult

SECRET = "s3cret-cron-token"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class _FakeFetcher:
    endpoint = SEARCH_ENDPOINT

    def __init__(self, items=None, *, error=None):
        self.items = items or []
        self.error = error
        self.calls = 0

    def check_config(self):
        pass

    async def search(self, query, *, fetched_at):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SearchResult(items=list(self.items))


def _items(n: int) -> list[Item]:
    return [
        Item.from_raw({"id": str(i), "text": f"post {i}", "created_at": "2025-03-01T11:00:00Z",
                       "entities": {"hashtags": [{"tag": "t"}]}})
        for i in range(n)
    ]


def _client(fetcher, **overrides) -> tuple[TestClient, _FakeFetcher]:
    values = {"TWITTER_USERNAME": "someone", "CRON_SECRET": SECRET, "APP_ENV": "development"}
    values.update(overrides)
    services = build_services(
        Settings(**values),
        backend=InMemoryBlobBackend(),
        rate_store=InMemoryRateStateStore(),
        fetcher=fetcher,
        rng=random.Random(5),
    )
    return TestClient(create_app(services=services)), fetcher


def test_cron_rejects_missing_or_wrong_bearer() -> None:
    client, fetcher = _client(_FakeFetcher(_items(3)))
    missing = client.get("/api/cron/fetch-tweets")
    wrong = client.get("/api/cron/fetch-tweets", headers={"Authorization": "Bearer nope"})
    raw = client.get("/api/cron/fetch-tweets", headers={"Authorization": SECRET})
    assert missing.status_code == 401
    assert missing.text == "Unauthorized"
    assert wrong.status_code == 401
    assert raw.status_code == 401
    assert fetcher.calls == 0


def test_cron_rejects_everything_when_secret_unset() -> None:
    client, _ = _client(_FakeFetcher(_items(3)), CRON_SECRET="")
    assert client.get("/api/cron/fetch-tweets", headers={"Authorization": "Bearer anything"}).status_code == 401


def test_cron_success_returns_counts() -> None:
    client, _ = _client(_FakeFetcher(_items(5)))
    resp = client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Tweets fetched and cached successfully",
        "tweetCount": 5,
        "selectedCount": 4,
    }


def test_cron_second_call_in_window_is_deferred() -> None:
    client, fetcher = _client(_FakeFetcher(_items(5)))
    client.get("/api/cron/fetch-tweets", headers=AUTH)
    resp = client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Rate limited; deferring to next scheduled run"
    assert fetcher.calls == 1


def test_cron_no_data_is_404() -> None:
    client, _ = _client(_FakeFetcher([]))
    resp = client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert resp.status_code == 404
    assert resp.text == "No tweets found"


def test_cron_upstream_error_message_only_outside_production() -> None:
    error = UpstreamError("Search returned HTTP 503", status_code=503)
    dev, _ = _client(_FakeFetcher(error=error))
    prod, _ = _client(_FakeFetcher(error=error), APP_ENV="production")

    dev_resp = dev.get("/api/cron/fetch-tweets", headers=AUTH)
    prod_resp = prod.get("/api/cron/fetch-tweets", headers=AUTH)
    assert dev_resp.status_code == 500
    assert dev_resp.text == "Search returned HTTP 503"
    assert prod_resp.status_code == 500
    assert prod_resp.text == "Internal Server Error"


def test_cron_missing_username_is_500() -> None:
    client, fetcher = _client(_FakeFetcher(_items(1)), TWITTER_USERNAME="")
    resp = client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert resp.status_code == 500
    assert resp.text == "Twitter username not configured"
    assert fetcher.calls == 0


def test_cron_unexpected_error_is_500() -> None:
    client, _ = _client(_FakeFetcher(error=RuntimeError("boom")))
    resp = client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert resp.status_code == 500
    assert resp.text == "boom"


def test_read_endpoints_before_and_after_a_cycle() -> None:
    client, _ = _client(_FakeFetcher(_items(6)))
    assert client.get("/api/tweets/selected").status_code == 404
    assert client.get("/api/tweets/latest").status_code == 404

    client.get("/api/cron/fetch-tweets", headers=AUTH)

    selected = client.get("/api/tweets/selected").json()
    latest = client.get("/api/tweets/latest").json()
    assert len(selected["items"]) == 4
    assert "writtenAt" in selected
    assert len(latest["items"]) == 6
    assert latest["key"].startswith("tweets/snapshot-")
    assert latest["items"][0]["edit_history_tweet_ids"] == ["0"]


def test_dev_reset_clears_cooldown() -> None:
    client, fetcher = _client(_FakeFetcher(_items(2)))
    client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert client.post("/api/dev/reset-rate-limits").status_code == 401

    resp = client.post("/api/dev/reset-rate-limits", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"status": "reset", "endpoint": SEARCH_ENDPOINT}

    client.get("/api/cron/fetch-tweets", headers=AUTH)
    assert fetcher.calls == 2


def test_dev_reset_hidden_in_production() -> None:
    client, _ = _client(_FakeFetcher(_items(2)), APP_ENV="production")
    assert client.post("/api/dev/reset-rate-limits", headers=AUTH).status_code == 404


def test_health() -> None:
    client, _ = _client(_FakeFetcher())
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "tweetcache"}


def test_metrics_exposes_cycle_counter() -> None:
    client, _ = _client(_FakeFetcher(_items(1)))
    client.get("/api/cron/fetch-tweets", headers=AUTH)
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "tweetcache_fetch_cycles_total" in resp.text


def test_selected_is_filled_lazily_when_only_a_snapshot_exists() -> None:
    client, _ = _client(_FakeFetcher())
    store = client.app.state.services.store
    asyncio.run(store.put(_items(6), datetime.now(timezone.utc)))

    resp = client.get("/api/tweets/selected")
    assert resp.status_code == 200
    assert len(resp.json()["items"]) == 4
    assert isinstance(asyncio.run(store.get_selection()), SelectionSet)
