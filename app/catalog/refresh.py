"""Periodic catalog refresh scheduling."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

from app.catalog import constants
from app.catalog.errors import CatalogError
from app.catalog.runs import start_run
from app.catalog.store import CatalogStore
from app.utils.dates import next_due_at, utcnow

if TYPE_CHECKING:
    from app.catalog.services import CatalogServices

logger = logging.getLogger(__name__)


def is_brand_due_for_refresh(brand: Mapping[str, Any], now: datetime | None = None) -> bool:
    if not brand.get("site_url"):
        return False
    due = brand.get("refresh_next_due_at")
    return due is None or due <= (now or utcnow())


def mark_refresh_completed(store: CatalogStore, brand_id: int, *, now: datetime | None = None) -> datetime:
    completed_at = now or utcnow()
    due = next_due_at(constants.refresh_interval_days(), constants.refresh_jitter_hours(), now=completed_at)
    store.update_brand_refresh(brand_id, completed_at=completed_at, next_due_at=due)
    return due


def handle_run_completed(store: CatalogStore, run_id: int, *, reason: str = "auto_complete") -> None:
    """Bookkeeping once a run reaches ``completed``."""
    summary = store.summarize_run(run_id)
    if summary is None:
        return
    logger.info(
        "Run %s completed: %s ok, %s failed of %s",
        run_id,
        summary.completed,
        summary.failed,
        summary.total,
    )
    if summary.failed == 0 and summary.total > 0:
        store.mark_brand_finished(summary.brand_id, reason)
    mark_refresh_completed(store, summary.brand_id)


async def run_refresh_batch(services: "CatalogServices", max_brands: int | None = None) -> dict[str, list[int]]:
    """Start runs for brands whose refresh is due, oldest due date first."""
    store = services.store
    limit = max_brands or constants.refresh_max_brands()
    now = utcnow()
    due = [row for row in store.list_brand_rows() if is_brand_due_for_refresh(row, now)]
    due.sort(key=lambda row: (row["refresh_next_due_at"] is not None, row["refresh_next_due_at"] or now))

    started: list[int] = []
    skipped: list[int] = []
    for row in due:
        if len(started) >= limit:
            break
        if store.find_active_run(row["id"], constants.LIVE_RUN_STATUSES) is not None:
            skipped.append(row["id"])
            continue
        try:
            await start_run(services, row["id"], constants.refresh_discovery_limit())
        except CatalogError as exc:
            logger.warning("Refresh skipped for brand %s: %s", row["slug"], exc)
            skipped.append(row["id"])
            continue
        started.append(row["id"])
    logger.info("Refresh batch started %s runs (%s skipped)", len(started), len(skipped))
    return {"started": started, "skipped": skipped}
