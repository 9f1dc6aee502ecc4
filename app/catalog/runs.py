"""Run lifecycle operations used by the API, cron and jobs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.catalog import constants
from app.catalog.discovery import discover_catalog_refs
from app.catalog.errors import CatalogError, ErrorKind
from app.catalog.store import CatalogStore, RunRecord, RunSummary

if TYPE_CHECKING:
    from app.catalog.services import CatalogServices

logger = logging.getLogger(__name__)


class BrandNotFound(CatalogError):
    def __init__(self, brand_id: int) -> None:
        super().__init__(f"Brand {brand_id} not found", ErrorKind.FATAL)
        self.brand_id = brand_id


class ActiveRunExists(CatalogError):
    def __init__(self, run: RunRecord) -> None:
        super().__init__(f"Brand {run.brand_id} already has an active run ({run.id}, {run.status})", ErrorKind.SOFT)
        self.run = run


class RunNotFound(CatalogError):
    def __init__(self, brand_id: int) -> None:
        super().__init__(f"No active run for brand {brand_id}", ErrorKind.SOFT)
        self.brand_id = brand_id


async def start_run(services: "CatalogServices", brand_id: int, limit: int) -> RunRecord:
    """Discover product URLs for a brand and persist a new ``processing`` run.

    Refuses when the brand already has an active run. The dispatcher is
    primed with the new run; a run with nothing to extract completes at once
    and still advances the brand's refresh schedule.
    """
    store = services.store
    brand = store.get_brand(brand_id)
    if brand is None:
        raise BrandNotFound(brand_id)
    if not brand.site_url:
        raise CatalogError(f"Brand {brand.slug} has no site_url", ErrorKind.FATAL)
    active = store.find_active_run(brand_id, constants.LIVE_RUN_STATUSES)
    if active is not None:
        raise ActiveRunExists(active)

    discovery = await discover_catalog_refs(services.http, brand, limit)
    if discovery.inferred and discovery.platform:
        store.update_brand_platform(brand.id, discovery.platform)
    run = store.create_run_with_items(brand.id, discovery.platform or discovery.adapter_platform, discovery.refs)
    logger.info(
        "Started run %s for %s: %s refs via %s (platform %s)",
        run.id,
        brand.slug,
        len(discovery.refs),
        discovery.source,
        discovery.adapter_platform,
    )
    if not discovery.refs:
        from app.catalog.refresh import handle_run_completed

        store.mark_run_status(run.id, constants.RUN_COMPLETED, last_error="no_product_urls")
        handle_run_completed(store, run.id)
        return store.get_run(run.id)
    await services.dispatcher.prime(run.id)
    return store.get_run(run.id)


def _transition(store: CatalogStore, brand_id: int, status: str, expected: tuple[str, ...], **values) -> RunSummary:
    run = store.find_active_run(brand_id)
    if run is None:
        raise RunNotFound(brand_id)
    if not store.mark_run_status(run.id, status, expected=expected, **values):
        raise CatalogError(f"Run {run.id} cannot move from {run.status} to {status}", ErrorKind.SOFT)
    return store.summarize_run(run.id)


def pause_run(store: CatalogStore, brand_id: int) -> RunSummary:
    return _transition(store, brand_id, constants.RUN_PAUSED, (constants.RUN_PROCESSING,))


def resume_run(store: CatalogStore, brand_id: int) -> RunSummary:
    return _transition(store, brand_id, constants.RUN_PROCESSING, (constants.RUN_PAUSED,))


def reset_run(store: CatalogStore, brand_id: int) -> RunSummary:
    """Unblock a run tripped by the error breaker."""
    return _transition(
        store,
        brand_id,
        constants.RUN_PROCESSING,
        (constants.RUN_BLOCKED,),
        consecutive_errors=0,
        block_reason=None,
        last_error=None,
    )


def stop_run(store: CatalogStore, brand_id: int) -> RunSummary:
    return _transition(store, brand_id, constants.RUN_STOPPED, constants.ACTIVE_RUN_STATUSES)


def finish_brand(store: CatalogStore, brand_id: int, reason: str = "manual") -> bool:
    """Mark a brand's catalog finished, stopping any active run first."""
    if store.get_brand(brand_id) is None:
        raise BrandNotFound(brand_id)
    run = store.find_active_run(brand_id)
    if run is not None:
        store.mark_run_status(run.id, constants.RUN_STOPPED)
    return store.mark_brand_finished(brand_id, reason)


def brand_state(store: CatalogStore, brand_id: int) -> RunSummary | None:
    run = store.find_latest_run(brand_id)
    return store.summarize_run(run.id) if run else None
