"""Time-boxed, concurrency-bounded draining of processing runs."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from app.catalog import constants
from app.catalog.dispatch import Dispatcher
from app.catalog.processor import ProcessResult
from app.catalog.refresh import handle_run_completed
from app.catalog.store import CatalogStore
from app.utils.dates import minutes_ago

logger = logging.getLogger(__name__)

MIN_WALL_CLOCK_MS = 2000
MAX_IDLE_ROUNDS = 2


@dataclass(slots=True)
class DrainOptions:
    brand_id: int | None = None
    batch_size: int | None = None
    concurrency: int | None = None
    max_wall_clock_ms: int | None = None

    def resolved(self) -> tuple[int, int, int]:
        """Apply env defaults and clamps: batch <= 0 is unbounded, budget >= 2s."""
        default_batch, default_concurrency, default_ms = constants.drain_defaults()
        batch = default_batch if self.batch_size is None else self.batch_size
        concurrency = default_concurrency if self.concurrency is None else self.concurrency
        max_ms = default_ms if self.max_wall_clock_ms is None else self.max_wall_clock_ms
        return max(0, batch), max(1, concurrency), max(MIN_WALL_CLOCK_MS, max_ms)


@dataclass(slots=True)
class DrainResult:
    processed: int = 0
    last_result: ProcessResult | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "lastResult": self.last_result.as_dict() if self.last_result else None,
        }


class DrainController:
    """Hands rounds of pending items from the oldest processing run to the
    dispatcher until the batch or the wall-clock budget is spent."""

    def __init__(self, store: CatalogStore, dispatcher: Dispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    async def drain(self, options: DrainOptions | None = None) -> DrainResult:
        options = options or DrainOptions()
        batch, concurrency, max_ms = options.resolved()
        deadline = time.monotonic() + max_ms / 1000
        result = DrainResult()
        idle_rounds = 0

        while time.monotonic() < deadline and (batch <= 0 or result.processed < batch):
            run = self.store.find_oldest_processing_run(options.brand_id)
            if run is None:
                break
            self.store.reset_stuck_items(run.id, minutes_ago(constants.stuck_minutes()))
            self.store.reset_queued_items(run.id, minutes_ago(constants.queued_stale_minutes()))

            room = concurrency if batch <= 0 else min(concurrency, batch - result.processed)
            items = self.store.list_pending_items(run.id, room)
            if not items:
                if self.store.finalize_run_if_idle(run.id):
                    handle_run_completed(self.store, run.id)
                    continue
                idle_rounds += 1
                if idle_rounds >= MAX_IDLE_ROUNDS:
                    break
                await asyncio.sleep(0.05)
                continue

            results = await self.dispatcher.dispatch(items, concurrency=concurrency, deadline=deadline)
            progressed = [outcome for outcome in results if outcome.progressed]
            result.processed += len(progressed)
            if results:
                result.last_result = results[-1]
            idle_rounds = 0 if progressed else idle_rounds + 1
            if idle_rounds >= MAX_IDLE_ROUNDS:
                break

            current = self.store.get_run(run.id)
            if current is None or current.status not in (constants.RUN_PROCESSING, constants.RUN_COMPLETED):
                logger.info("Drain stopping: run %s is %s", run.id, current.status if current else "gone")
                break

        logger.info("Drain processed %s items", result.processed)
        return result
