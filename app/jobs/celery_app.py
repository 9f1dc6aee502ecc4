"""Celery configuration for catalog workers and scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from app.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("catalog", broker=broker_url, backend=backend_url, include=["app.jobs.catalog"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    "catalog-drain": {
        "task": "catalog.drain",
        "schedule": crontab(minute=os.environ.get("CATALOG_DRAIN_CRON_MINUTE", "*/5")),
    },
    "catalog-refresh": {
        "task": "catalog.refresh",
        "schedule": crontab(hour=int(os.environ.get("CATALOG_REFRESH_HOUR", "3")), minute=0),
    },
}


@celery_app.task(name="catalog.process_item")
def process_item_task(item_id: int):  # pragma: no cover - executed by worker
    import asyncio

    from app.jobs.catalog import process_item

    return asyncio.run(process_item(item_id))


@celery_app.task(name="catalog.drain")
def drain_task(brand_id: int | None = None):  # pragma: no cover - executed by worker
    import asyncio

    from app.jobs.catalog import run_drain

    return asyncio.run(run_drain(brand_id))


@celery_app.task(name="catalog.refresh")
def refresh_task():  # pragma: no cover - executed by worker
    import asyncio

    from app.jobs.catalog import run_refresh

    return asyncio.run(run_refresh())
