"""Celery application: the periodic scheduler for fetch cycles."""
from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from kombu import Exchange, Queue

from tweetcache.config import settings
from tweetcache.logging_config import setup_logging

celery = Celery(
    "tweetcache",
    broker=settings.CELERY_BROKER_URL,
)


@celery_setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    setup_logging()


# ── Serialisation ──
celery.conf.accept_content = ["json"]
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.timezone = "UTC"
celery.conf.enable_utc = True

# ── Reliability ──
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.task_reject_on_worker_lost = True
celery.conf.task_ignore_result = True

# ── Exchanges & Queues ──
default_exchange = Exchange("tweetcache", type="direct")

celery.conf.task_queues = (
    Queue("fetch", default_exchange, routing_key="fetch"),
)

celery.conf.task_default_queue = "fetch"
celery.conf.task_default_exchange = "tweetcache"
celery.conf.task_default_routing_key = "fetch"

celery.conf.task_routes = {
    "tweetcache.workers.fetch.run_fetch_cycle": {"queue": "fetch"},
}

# ── Beat Schedule ──
celery.conf.beat_schedule = {
    "fetch-tweets": {
        "task": "tweetcache.workers.fetch.run_fetch_cycle",
        "schedule": settings.FETCH_SCHEDULE_S,
    },
}

# ── Auto-discover tasks ──
celery.autodiscover_tasks(["tweetcache.workers"], related_name="fetch", force=True)
