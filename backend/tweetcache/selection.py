"""Entity-biased random selection of display items.

Items carrying at least one url/mention/hashtag/media entity are preferred;
plain items only fill the shortfall. Shuffling is Fisher-Yates over an
injectable ``random.Random`` so tests can seed it.
"""
from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable, Sequence, TypeVar

from tweetcache.errors import InvalidItemError, StorageError
from tweetcache.metrics import ITEMS_DROPPED_TOTAL, SELECTED_ITEMS_GAUGE
from tweetcache.schemas.item import Failure, Item, NotFound, SelectionSet, Snapshot

if TYPE_CHECKING:
    from tweetcache.cache_store import TweetCacheStore

logger = logging.getLogger(__name__)

DEFAULT_SELECT_COUNT = 4
ROTATION_KEEP = 2
ROTATION_MIN_FRESH = 2

T = TypeVar("T")


def validate_pool(
    pool: Iterable[Any],
    *,
    fetched_at: datetime | None = None,
    stage: str = "selection",
) -> list[Item]:
    """Drop entries failing the item invariants and repeated ids (first wins)."""
    valid: list[Item] = []
    seen: set[str] = set()
    invalid = 0
    duplicates = 0
    for raw in pool:
        try:
            item = Item.from_raw(raw, fetched_at=fetched_at)
        except InvalidItemError as exc:
            invalid += 1
            logger.debug("Dropping invalid item: %s", exc)
            continue
        if item.id in seen:
            duplicates += 1
            continue
        seen.add(item.id)
        valid.append(item)

    if invalid or duplicates:
        logger.info(
            "Validation dropped %s invalid and %s duplicate items",
            invalid,
            duplicates,
            extra={"step": "validation", "stage": stage, "dropped": invalid + duplicates},
        )
        ITEMS_DROPPED_TOTAL.labels(stage=stage).inc(invalid + duplicates)
    return valid


def partition(items: Iterable[Item]) -> tuple[list[Item], list[Item]]:
    with_entities: list[Item] = []
    without_entities: list[Item] = []
    for item in items:
        (with_entities if item.has_entities else without_entities).append(item)
    return with_entities, without_entities


def fisher_yates(items: Sequence[T], rng: random.Random) -> list[T]:
    """Uniform shuffle of a copy of ``items``."""
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def select(
    pool: Iterable[Any],
    count: int,
    *,
    rng: random.Random | None = None,
    fetched_at: datetime | None = None,
) -> list[Item]:
    """Pick up to ``count`` distinct items, entity-bearing ones first."""
    if count <= 0:
        return []
    rng = rng or random.Random()
    valid = validate_pool(pool, fetched_at=fetched_at)
    with_entities, without_entities = partition(valid)

    if len(with_entities) >= count:
        return fisher_yates(with_entities, rng)[:count]

    shortfall = count - len(with_entities)
    chosen = with_entities + fisher_yates(without_entities, rng)[:shortfall]
    return fisher_yates(chosen, rng)


def rotate(
    current: Sequence[Item],
    pool: Iterable[Any],
    count: int,
    *,
    rng: random.Random,
    keep: int = ROTATION_KEEP,
) -> list[Item] | None:
    """Keep up to ``keep`` current items and refill from items not currently shown.

    Returns None when the pool has fewer than two unseen items, in which case
    the current selection should stay as it is.
    """
    shown = {item.id for item in current}
    fresh = [item for item in validate_pool(pool, stage="rotation") if item.id not in shown]
    if len(fresh) < ROTATION_MIN_FRESH:
        return None
    kept = fisher_yates(current, rng)[: min(keep, len(current), count)]
    return fisher_yates(kept + select(fresh, count - len(kept), rng=rng), rng)


class SelectionEngine:
    """Selects from a pool and overwrites the selection slot."""

    def __init__(self, store: TweetCacheStore, *, count: int = DEFAULT_SELECT_COUNT, rng: random.Random | None = None):
        self.store = store
        self.count = count
        self.rng = rng or random.Random()

    async def select_and_persist(self, pool: Sequence[Any], now: datetime) -> SelectionSet:
        selected = select(pool, self.count, rng=self.rng, fetched_at=now)
        with_entities = sum(1 for item in selected if item.has_entities)
        logger.info(
            "Selected %s of %s items (%s with entities)",
            len(selected),
            len(pool),
            with_entities,
            extra={
                "step": "tweets-selected",
                "selected_ids": [item.id for item in selected],
            },
        )
        selection = await self.store.write_selection(selected, now)
        SELECTED_ITEMS_GAUGE.set(len(selected))
        return selection

    async def current(self, now: datetime, *, max_age: timedelta) -> SelectionSet | NotFound | Failure:
        """Selection slot for display.

        An empty slot is filled from the latest snapshot; a slot older than
        ``max_age`` is rotated. A failed write still returns the fresh pick.
        """
        slot = await self.store.get_selection()
        if isinstance(slot, Failure):
            return slot
        latest = await self.store.get_latest()
        if not isinstance(latest, Snapshot):
            return slot

        if isinstance(slot, SelectionSet):
            if now - slot.written_at < max_age:
                return slot
            items = rotate(slot.items, latest.items, self.count, rng=self.rng)
            if items is None:
                return slot
            reason = "rotated"
        else:
            items = select(latest.items, self.count, rng=self.rng, fetched_at=latest.written_at)
            if not items:
                return slot
            reason = "filled"

        logger.info(
            "Selection %s from snapshot %s",
            reason,
            latest.key,
            extra={"step": "tweets-selected", "selected_ids": [item.id for item in items]},
        )
        try:
            selection = await self.store.write_selection(items, now)
        except StorageError as exc:
            logger.error("Selection write failed: %s", exc, extra={"step": "tweets-selected"})
            return SelectionSet(items=items, written_at=now)
        SELECTED_ITEMS_GAUGE.set(len(items))
        return selection
