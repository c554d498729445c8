"""Append-only snapshot storage plus the single selection slot.

Snapshots live under ``<prefix>-<millis>`` keys and are never overwritten;
the selection lives under its own key outside the snapshot prefix and is
overwritten on every write.

Reads distinguish an empty/corrupt cache (``NotFound``, expected) from a
broken backend (``Failure``, alertable).
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Sequence

from tweetcache.errors import StorageError
from tweetcache.metrics import SNAPSHOTS_WRITTEN_TOTAL, STORAGE_ERRORS_TOTAL
from tweetcache.schemas.item import Failure, Item, NotFound, SelectionSet, Snapshot, parse_timestamp
from tweetcache.selection import validate_pool
from tweetcache.storage.backends import BlobBackend, BlobInfo

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "tweets/snapshot"
DEFAULT_SELECTION_KEY = "selection/current.json"
DEFAULT_MAX_ITEMS = 100


def _decode_body(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        return None
    return payload


class TweetCacheStore:
    def __init__(
        self,
        backend: BlobBackend,
        *,
        prefix: str = DEFAULT_PREFIX,
        selection_key: str = DEFAULT_SELECTION_KEY,
        max_items: int = DEFAULT_MAX_ITEMS,
    ):
        if selection_key.startswith(prefix):
            raise ValueError("selection key must live outside the snapshot prefix")
        self.backend = backend
        self.prefix = prefix
        self.selection_key = selection_key
        self.max_items = max_items
        self._key_pattern = re.compile(re.escape(prefix) + r"-(\d+)$")
        self._last_millis = 0

    def _next_key(self, now: datetime) -> str:
        millis = int(now.timestamp() * 1000)
        if millis <= self._last_millis:
            millis = self._last_millis + 1
        self._last_millis = millis
        return f"{self.prefix}-{millis}"

    def is_snapshot_key(self, key: str) -> bool:
        return self._key_pattern.match(key) is not None

    async def list_snapshots(self) -> list[BlobInfo]:
        """All snapshot blobs; raises StorageError when the backend cannot list."""
        try:
            blobs = await self.backend.list(f"{self.prefix}-")
        except StorageError:
            STORAGE_ERRORS_TOTAL.labels(operation="list").inc()
            raise
        return [b for b in blobs if self.is_snapshot_key(b.key)]

    async def put(self, items: Sequence[Item], now: datetime) -> Snapshot:
        kept = list(items[: self.max_items])
        if len(items) > self.max_items:
            logger.info(
                "Truncating %s items to %s",
                len(items),
                self.max_items,
                extra={"step": "tweets-cached"},
            )
        snapshot = Snapshot(key=self._next_key(now), items=kept, written_at=now)
        body = json.dumps(snapshot.to_wire(), ensure_ascii=False).encode("utf-8")
        try:
            await self.backend.put(snapshot.key, body)
        except StorageError:
            STORAGE_ERRORS_TOTAL.labels(operation="put").inc()
            raise
        SNAPSHOTS_WRITTEN_TOTAL.inc()
        logger.info(
            "Snapshot %s written (%s items, %s bytes)",
            snapshot.key,
            len(kept),
            len(body),
            extra={"step": "tweets-cached"},
        )
        return snapshot

    async def get_latest(self) -> Snapshot | NotFound | Failure:
        try:
            blobs = await self.list_snapshots()
        except StorageError as exc:
            logger.error("Listing snapshots failed: %s", exc, extra={"step": "read-latest"})
            return Failure(str(exc))
        if not blobs:
            return NotFound()

        latest = sorted(blobs, key=lambda b: b.key)[-1]
        try:
            body = await self.backend.get(latest.url)
        except StorageError as exc:
            STORAGE_ERRORS_TOTAL.labels(operation="get").inc()
            logger.error("Reading snapshot %s failed: %s", latest.key, exc, extra={"step": "read-latest"})
            return Failure(str(exc))

        payload = _decode_body(body)
        if payload is None:
            logger.error(
                "Snapshot %s is corrupt; treating cache as empty",
                latest.key,
                extra={"step": "read-latest", "snapshot_key": latest.key},
            )
            return NotFound("corrupt")

        written_at = parse_timestamp(payload.get("writtenAt")) or latest.written_at
        items = validate_pool(payload["items"], fetched_at=written_at, stage="snapshot-read")
        return Snapshot(key=latest.key, items=items, written_at=written_at)

    async def write_selection(self, items: Sequence[Item], now: datetime) -> SelectionSet:
        selection = SelectionSet(items=list(items), written_at=now)
        body = json.dumps(selection.to_wire(), ensure_ascii=False).encode("utf-8")
        try:
            await self.backend.put(self.selection_key, body)
        except StorageError:
            STORAGE_ERRORS_TOTAL.labels(operation="put").inc()
            raise
        return selection

    async def get_selection(self) -> SelectionSet | NotFound | Failure:
        try:
            blobs = await self.backend.list(self.selection_key)
        except StorageError as exc:
            STORAGE_ERRORS_TOTAL.labels(operation="list").inc()
            logger.error("Listing selection slot failed: %s", exc, extra={"step": "read-selection"})
            return Failure(str(exc))
        slot = next((b for b in blobs if b.key == self.selection_key), None)
        if slot is None:
            return NotFound()

        try:
            body = await self.backend.get(slot.url)
        except StorageError as exc:
            STORAGE_ERRORS_TOTAL.labels(operation="get").inc()
            logger.error("Reading selection slot failed: %s", exc, extra={"step": "read-selection"})
            return Failure(str(exc))

        payload = _decode_body(body)
        if payload is None:
            logger.error("Selection slot is corrupt; treating as empty", extra={"step": "read-selection"})
            return NotFound("corrupt")
        written_at = parse_timestamp(payload.get("writtenAt")) or slot.written_at
        items = validate_pool(payload["items"], fetched_at=written_at, stage="selection-read")
        return SelectionSet(items=items, written_at=written_at)
