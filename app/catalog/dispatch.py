"""Hand catalog items to workers: in-process or through Celery.

Both dispatchers expose the same two coroutines. ``dispatch`` takes a round
of items picked by the drain loop; ``prime`` is called when a run starts or
a worker finishes an item, and publishes whatever the strategy needs to keep
the run moving.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Sequence

from kombu.exceptions import OperationalError

from app.catalog import constants
from app.catalog.processor import ItemProcessor, ProcessResult
from app.catalog.store import CatalogStore, ItemRecord

if TYPE_CHECKING:
    from celery import Celery

logger = logging.getLogger(__name__)

PROCESS_ITEM_TASK = "catalog.process_item"


class InlineDispatcher:
    def __init__(self, processor: ItemProcessor, *, concurrency: int | None = None) -> None:
        self.processor = processor
        self.concurrency = max(1, concurrency or constants.drain_defaults()[1])

    async def dispatch(
        self,
        items: Sequence[ItemRecord],
        *,
        concurrency: int | None = None,
        deadline: float | None = None,
    ) -> list[ProcessResult]:
        """Process ``items`` here; items not started by ``deadline`` are left pending."""
        semaphore = asyncio.Semaphore(max(1, concurrency or self.concurrency))

        async def run_one(item: ItemRecord) -> ProcessResult | None:
            async with semaphore:
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                return await self.processor.process_item_by_id(item.id)

        outcomes = await asyncio.gather(*(run_one(item) for item in items))
        return [outcome for outcome in outcomes if outcome is not None]

    async def prime(self, run_id: int) -> int:
        # drain calls pick processing runs up on their own
        return 0


class CeleryDispatcher:
    """Flags items ``queued`` and publishes one task per item.

    The task id is derived from the item id, and only items this call
    actually moved to ``queued`` are published, so an item is never in the
    broker twice.
    """

    def __init__(self, store: CatalogStore, celery_app: "Celery") -> None:
        self.store = store
        self.celery_app = celery_app

    async def dispatch(
        self,
        items: Sequence[ItemRecord],
        *,
        concurrency: int | None = None,
        deadline: float | None = None,
    ) -> list[ProcessResult]:
        queued = self.store.mark_items_queued(item.id for item in items)
        for item_id in queued:
            self.celery_app.send_task(PROCESS_ITEM_TASK, args=[item_id], task_id=f"catalog-item-{item_id}")
        if queued:
            logger.info("Enqueued %s catalog items", len(queued))
        return [ProcessResult(item_id, "queued") for item_id in queued]

    async def prime(self, run_id: int) -> int:
        """Publish the next batch of pending items while the run keeps processing."""
        run = self.store.get_run(run_id)
        if run is None or run.status != constants.RUN_PROCESSING:
            return 0
        pending = self.store.list_pending_items(run_id, constants.queue_enqueue_limit())
        return len(await self.dispatch(pending))


Dispatcher = InlineDispatcher | CeleryDispatcher


def broker_available(celery_app: "Celery") -> bool:
    try:
        with celery_app.connection_for_write() as conn:
            conn.ensure_connection(max_retries=1)
    except (OperationalError, OSError) as exc:
        logger.warning("Celery broker unavailable: %s", exc)
        return False
    return True


def select_dispatcher(
    store: CatalogStore,
    processor: ItemProcessor,
    celery_app: "Celery | None" = None,
) -> Dispatcher:
    """Pick the dispatch strategy once, at startup."""
    if constants.queue_enabled():
        if celery_app is None:
            from app.jobs.celery_app import celery_app
        if broker_available(celery_app):
            logger.info("Dispatching catalog items through Celery")
            return CeleryDispatcher(store, celery_app)
        logger.warning("Queue enabled but broker unreachable; falling back to inline processing")
    return InlineDispatcher(processor)
