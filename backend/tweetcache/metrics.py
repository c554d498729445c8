"""Prometheus metrics for the fetch/cache/select pipeline."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


FETCH_CYCLES_TOTAL = Counter(
    "tweetcache_fetch_cycles_total",
    "Fetch cycles by terminal outcome",
    ["outcome"],
)

RATE_GATE_DECISIONS_TOTAL = Counter(
    "tweetcache_rate_gate_decisions_total",
    "Rate gate answers by endpoint and decision",
    ["endpoint", "decision"],
)

UPSTREAM_LATENCY_SECONDS = Histogram(
    "tweetcache_upstream_latency_seconds",
    "Upstream search latency",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 40, 60),
)

UPSTREAM_ITEMS_TOTAL = Counter(
    "tweetcache_upstream_items_total",
    "Items returned by the upstream search",
)

SNAPSHOTS_WRITTEN_TOTAL = Counter(
    "tweetcache_snapshots_written_total",
    "Snapshots written to the blob backend",
)

SNAPSHOTS_REAPED_TOTAL = Counter(
    "tweetcache_snapshots_reaped_total",
    "Snapshots deleted by the storage reaper",
)

STORAGE_BYTES_GAUGE = Gauge(
    "tweetcache_storage_bytes",
    "Bytes held by snapshots after the last reap",
)

STORAGE_ERRORS_TOTAL = Counter(
    "tweetcache_storage_errors_total",
    "Blob backend failures by operation",
    ["operation"],
)

ITEMS_DROPPED_TOTAL = Counter(
    "tweetcache_items_dropped_total",
    "Items dropped by validation",
    ["stage"],
)

SELECTED_ITEMS_GAUGE = Gauge(
    "tweetcache_selected_items",
    "Items in the current selection",
)
