"""Soft storage budget enforcement for snapshots.

Runs after every successful ``put``. Once total snapshot bytes reach the
budget, the newest snapshots are kept while their running total stays under
80% of the budget and everything older is deleted, so the next write does
not immediately trigger another eviction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from tweetcache.cache_store import TweetCacheStore
from tweetcache.errors import StorageError
from tweetcache.metrics import SNAPSHOTS_REAPED_TOTAL, STORAGE_BYTES_GAUGE, STORAGE_ERRORS_TOTAL
from tweetcache.storage.backends import BlobInfo

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DEFAULT_BUDGET_MB = 450.0
KEEP_RATIO = 0.8


@dataclass(frozen=True)
class ReapResult:
    kept_count: int
    deleted_count: int
    total_bytes: int
    kept_bytes: int


def newest_first(blobs: list[BlobInfo]) -> list[BlobInfo]:
    """Order by written_at descending; equal timestamps by key ascending."""
    by_key = sorted(blobs, key=lambda b: b.key)
    return sorted(by_key, key=lambda b: b.written_at, reverse=True)


def plan_eviction(blobs: list[BlobInfo], budget_mb: float) -> tuple[list[BlobInfo], list[BlobInfo]]:
    """Split snapshots into (keep, delete) for the given budget."""
    budget_bytes = budget_mb * BYTES_PER_MB
    total = sum(b.size for b in blobs)
    if total < budget_bytes:
        return list(blobs), []

    ordered = newest_first(blobs)
    threshold = KEEP_RATIO * budget_bytes
    running = 0
    for index, blob in enumerate(ordered):
        if running + blob.size >= threshold:
            return ordered[:index], ordered[index:]
        running += blob.size
    return ordered, []


class StorageReaper:
    def __init__(self, store: TweetCacheStore):
        self.store = store

    async def usage_mb(self) -> float:
        blobs = await self.store.list_snapshots()
        return sum(b.size for b in blobs) / BYTES_PER_MB

    async def reap(self, budget_mb: float = DEFAULT_BUDGET_MB) -> ReapResult:
        """Delete the oldest snapshots beyond the budget. Raises StorageError if listing fails."""
        blobs = await self.store.list_snapshots()
        total = sum(b.size for b in blobs)
        keep, doomed = plan_eviction(blobs, budget_mb)

        if not doomed:
            STORAGE_BYTES_GAUGE.set(total)
            logger.info(
                "Storage usage %.2f MB below budget %.2f MB; nothing to reap",
                total / BYTES_PER_MB,
                budget_mb,
                extra={"step": "reaping"},
            )
            return ReapResult(kept_count=len(keep), deleted_count=0, total_bytes=total, kept_bytes=total)

        deleted = 0
        failed: list[BlobInfo] = []
        for blob in doomed:
            try:
                await self.store.backend.delete(blob.url)
            except StorageError as exc:
                STORAGE_ERRORS_TOTAL.labels(operation="delete").inc()
                logger.warning("Could not delete snapshot %s: %s", blob.key, exc, extra={"step": "reaping"})
                failed.append(blob)
                continue
            deleted += 1

        kept_bytes = sum(b.size for b in keep) + sum(b.size for b in failed)
        SNAPSHOTS_REAPED_TOTAL.inc(deleted)
        STORAGE_BYTES_GAUGE.set(kept_bytes)
        logger.info(
            "Reaped %s snapshots (%.2f MB -> %.2f MB, budget %.2f MB)",
            deleted,
            total / BYTES_PER_MB,
            kept_bytes / BYTES_PER_MB,
            budget_mb,
            extra={"step": "reaping", "files_kept": len(keep) + len(failed), "files_deleted": deleted},
        )
        return ReapResult(
            kept_count=len(keep) + len(failed),
            deleted_count=deleted,
            total_bytes=total,
            kept_bytes=kept_bytes,
        )
