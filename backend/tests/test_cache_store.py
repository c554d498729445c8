from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tweetcache.cache_store import Failure, NotFound, TweetCacheStore
from tweetcache.errors import StorageError
from tweetcache.schemas.item import Item, SelectionSet, Snapshot
from tweetcache.storage.backends import InMemoryBlobBackend

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _BrokenBackend(InMemoryBlobBackend):
    def __init__(self, *, fail_list: bool = False, fail_put: bool = False):
        super().__init__()
        self.fail_list = fail_list
        self.fail_put = fail_put

    async def list(self, prefix):
        if self.fail_list:
            raise StorageError("list unavailable", operation="list")
        return await super().list(prefix)

    async def put(self, key, body):
        if self.fail_put:
            raise StorageError("disk full", operation="put")
        return await super().put(key, body)


def _items(n: int, start: int = 0) -> list[Item]:
    return [
        Item.from_raw(
            {"id": str(start + i), "text": f"item {start + i}", "created_at": "2025-02-28T10:00:00Z"},
            fetched_at=NOW,
        )
        for i in range(n)
    ]


def test_empty_store_reports_not_found() -> None:
    store = TweetCacheStore(InMemoryBlobBackend())
    assert asyncio.run(store.get_latest()) == NotFound("empty")
    assert asyncio.run(store.get_selection()) == NotFound("empty")


def test_put_then_get_latest_round_trips_items() -> None:
    store = TweetCacheStore(InMemoryBlobBackend())

    async def _run():
        written = await store.put(_items(3), NOW)
        return written, await store.get_latest()

    written, latest = asyncio.run(_run())
    assert isinstance(latest, Snapshot)
    assert latest.key == written.key == f"tweets/snapshot-{int(NOW.timestamp() * 1000)}"
    assert [i.id for i in latest.items] == ["0", "1", "2"]
    assert latest.written_at == NOW


def test_put_truncates_to_first_max_items() -> None:
    store = TweetCacheStore(InMemoryBlobBackend())

    async def _run():
        await store.put(_items(150), NOW)
        return await store.get_latest()

    latest = asyncio.run(_run())
    assert len(latest.items) == 100
    assert latest.items[0].id == "0"
    assert latest.items[-1].id == "99"


def test_keys_stay_unique_and_increasing_for_same_timestamp() -> None:
    store = TweetCacheStore(InMemoryBlobBackend())

    async def _run():
        first = await store.put(_items(1), NOW)
        second = await store.put(_items(1, start=10), NOW)
        third = await store.put(_items(1, start=20), NOW - timedelta(seconds=5))
        return first, second, third, await store.get_latest()

    first, second, third, latest = asyncio.run(_run())
    assert first.key < second.key < third.key
    assert latest.key == third.key
    assert latest.items[0].id == "20"


def test_latest_is_chosen_by_key_order() -> None:
    backend = InMemoryBlobBackend()
    store = TweetCacheStore(backend)

    async def _run():
        await store.put(_items(1, start=1), NOW)
        await store.put(_items(1, start=2), NOW + timedelta(minutes=15))
        return await store.get_latest()

    assert asyncio.run(_run()).items[0].id == "2"


def test_corrupt_latest_snapshot_reads_as_not_found() -> None:
    backend = InMemoryBlobBackend()
    store = TweetCacheStore(backend)

    async def _run():
        await store.put(_items(2), NOW)
        await backend.put("tweets/snapshot-9999999999999", b"not json")
        return await store.get_latest()

    assert asyncio.run(_run()) == NotFound("corrupt")


def test_listing_failure_is_reported_as_failure() -> None:
    store = TweetCacheStore(_BrokenBackend(fail_list=True))
    latest = asyncio.run(store.get_latest())
    assert isinstance(latest, Failure)
    assert "list unavailable" in latest.reason
    assert isinstance(asyncio.run(store.get_selection()), Failure)


def test_put_failure_raises_storage_error() -> None:
    store = TweetCacheStore(_BrokenBackend(fail_put=True))
    with pytest.raises(StorageError):
        asyncio.run(store.put(_items(1), NOW))


def test_selection_slot_is_overwritten_and_not_a_snapshot() -> None:
    backend = InMemoryBlobBackend()
    store = TweetCacheStore(backend)

    async def _run():
        await store.write_selection(_items(4), NOW)
        await store.write_selection(_items(2, start=50), NOW + timedelta(minutes=1))
        return await store.get_selection(), await store.list_snapshots()

    selection, snapshots = asyncio.run(_run())
    assert isinstance(selection, SelectionSet)
    assert [i.id for i in selection.items] == ["50", "51"]
    assert snapshots == []


def test_selection_key_inside_snapshot_prefix_is_rejected() -> None:
    with pytest.raises(ValueError):
        TweetCacheStore(InMemoryBlobBackend(), prefix="tweets/snapshot", selection_key="tweets/snapshot-selection")


def test_unrelated_keys_under_prefix_are_ignored() -> None:
    backend = InMemoryBlobBackend()
    store = TweetCacheStore(backend)

    async def _run():
        await backend.put("tweets/snapshot-latest.bak", b"{}")
        return await store.list_snapshots()

    assert asyncio.run(_run()) == []


def test_invalid_items_in_stored_snapshot_are_dropped_on_read() -> None:
    backend = InMemoryBlobBackend()
    store = TweetCacheStore(backend)
    body = (
        b'{"key": "tweets/snapshot-1740830400000", "writtenAt": "2025-03-01T12:00:00+00:00", '
        b'"items": [{"id": "1", "text": "ok"}, {"text": "no id"}, {"id": "2", "text": ""}]}'
    )

    async def _run():
        await backend.put("tweets/snapshot-1740830400000", body)
        return await store.get_latest()

    latest = asyncio.run(_run())
    assert [i.id for i in latest.items] == ["1"]
    # missing created_at is repaired from the snapshot write time
    assert latest.items[0].created_at == NOW
