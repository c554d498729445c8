"""X API v2 recent-search client.

Returns validated items plus whatever rate budget the response headers
reported. Media objects from ``includes.media`` are folded into each item's
``entities.media`` so entity presence is a property of the item alone.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

import httpx

from tweetcache.errors import ConfigError, UpstreamError
from tweetcache.metrics import UPSTREAM_ITEMS_TOTAL, UPSTREAM_LATENCY_SECONDS
from tweetcache.rate_limit import UpstreamBudget
from tweetcache.schemas.item import Item
from tweetcache.selection import validate_pool

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "tweets/search/recent"
USER_AGENT = "TweetCache/1.0"

TWEET_FIELDS = ["created_at", "public_metrics", "entities", "author_id", "attachments", "edit_history_tweet_ids"]
MEDIA_FIELDS = ["url", "preview_image_url", "alt_text", "type", "width", "height", "duration_ms"]
EXPANSIONS = ["author_id", "attachments.media_keys"]


@dataclass
class SearchResult:
    items: list[Item]
    budget: UpstreamBudget | None = None
    meta: dict[str, Any] = field(default_factory=dict)


class UpstreamFetcher(Protocol):
    endpoint: str

    def check_config(self) -> None: ...

    async def search(self, query: str, *, fetched_at: datetime) -> SearchResult: ...


def build_query(username: str) -> str:
    """Author's own posts with links; no replies, no retweets."""
    return f"from:{username} -is:reply -is:retweet has:links"


def parse_budget(headers: Mapping[str, str]) -> UpstreamBudget | None:
    remaining = headers.get("x-rate-limit-remaining")
    reset = headers.get("x-rate-limit-reset")
    if remaining is None or reset is None:
        return None
    try:
        return UpstreamBudget(
            remaining=int(remaining),
            reset_at=datetime.fromtimestamp(int(reset), tz=timezone.utc),
        )
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring malformed rate headers: remaining=%r reset=%r", remaining, reset)
        return None


def normalize_tweets(payload: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Raw tweet dicts with attached media merged into ``entities.media``."""
    data = payload.get("data")
    if data is None:
        return []
    if not isinstance(data, list):
        raise UpstreamError("Malformed search response: 'data' is not a list")

    includes = payload.get("includes") if isinstance(payload.get("includes"), dict) else {}
    media_by_key = {
        m["media_key"]: m
        for m in includes.get("media") or []
        if isinstance(m, dict) and m.get("media_key")
    }

    tweets = []
    for raw in data:
        if not isinstance(raw, dict):
            tweets.append(raw)
            continue
        tweet = dict(raw)
        entities = dict(tweet.get("entities") or {}) if isinstance(tweet.get("entities"), dict) else {}
        attachments = tweet.get("attachments") if isinstance(tweet.get("attachments"), dict) else {}
        media_keys = attachments.get("media_keys") or []
        if media_keys:
            media = list(entities.get("media") or [])
            for key in media_keys:
                media.append(dict(media_by_key.get(key) or {"media_key": key}))
            entities["media"] = media
        tweet["entities"] = entities
        tweets.append(tweet)
    return tweets


class XSearchClient:
    endpoint = SEARCH_ENDPOINT

    def __init__(
        self,
        *,
        bearer_token: str,
        base_url: str = "https://api.twitter.com/2",
        timeout: float = 20.0,
        page_size: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bearer_token = bearer_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = max(10, min(100, int(page_size)))
        self._transport = transport

    def _params(self, query: str) -> dict[str, Any]:
        return {
            "query": query,
            "max_results": self.page_size,
            "tweet.fields": ",".join(TWEET_FIELDS),
            "media.fields": ",".join(MEDIA_FIELDS),
            "expansions": ",".join(EXPANSIONS),
        }

    def check_config(self) -> None:
        if not self.bearer_token:
            raise ConfigError("TWITTER_BEARER_TOKEN is not configured")

    async def search(self, query: str, *, fetched_at: datetime) -> SearchResult:
        self.check_config()

        headers = {
            "Authorization": f"Bearer {self.bearer_token}",
            "User-Agent": USER_AGENT,
        }
        url = f"{self.base_url}/{self.endpoint}"
        async with httpx.AsyncClient(
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            started = time.perf_counter()
            try:
                resp = await client.get(url, params=self._params(query))
            except httpx.HTTPError as exc:
                raise UpstreamError(f"Search request failed: {type(exc).__name__}: {exc}") from exc

        budget = parse_budget(resp.headers)
        UPSTREAM_LATENCY_SECONDS.labels(endpoint=self.endpoint).observe(time.perf_counter() - started)

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "HTTP error %s from %s",
                resp.status_code,
                self.endpoint,
                extra={"step": "search-error", "body": resp.text[:500]},
            )
            raise UpstreamError(
                f"Search returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                budget=budget,
            ) from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamError("Search response is not JSON", status_code=resp.status_code, budget=budget) from exc
        if not isinstance(payload, dict):
            raise UpstreamError("Search response is not an object", status_code=resp.status_code, budget=budget)

        try:
            raw_tweets = normalize_tweets(payload)
        except UpstreamError as exc:
            exc.budget = budget
            raise
        items = validate_pool(raw_tweets, fetched_at=fetched_at, stage="upstream")
        UPSTREAM_ITEMS_TOTAL.inc(len(items))
        meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
        return SearchResult(items=items, budget=budget, meta=meta)
