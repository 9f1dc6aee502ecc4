"""Persistence for catalog runs and their items.

Every state change is a single-row conditional ``UPDATE`` so concurrent
workers (inline coroutines, Celery workers, overlapping cron drains) can race
on the same rows without double-processing an item or double-counting an
error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from app.catalog.constants import (
    ACTIVE_RUN_STATUSES,
    CATALOG_MAX_ATTEMPTS,
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    ITEM_QUEUED,
    RUN_BLOCKED,
    RUN_COMPLETED,
    RUN_PAUSED,
    RUN_PROCESSING,
    RUN_STOPPED,
)
from app.catalog.types import Brand, ProductRef
from app.db.tables import brands, catalog_items, catalog_runs
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

# target status -> statuses it may be entered from
RUN_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RUN_PROCESSING: (RUN_PAUSED, RUN_BLOCKED),
    RUN_PAUSED: (RUN_PROCESSING,),
    RUN_STOPPED: (RUN_PROCESSING, RUN_PAUSED, RUN_BLOCKED),
    RUN_BLOCKED: (RUN_PROCESSING,),
    RUN_COMPLETED: (RUN_PROCESSING,),
}
RUNNABLE_ITEM_STATUSES = (ITEM_PENDING, ITEM_FAILED)


def _record(cls, row: Mapping[str, Any] | None):
    if row is None:
        return None
    names = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in dict(row).items() if key in names})


@dataclass(slots=True)
class RunRecord:
    id: int
    brand_id: int
    status: str
    platform: str | None
    total_items: int
    started_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    last_url: str | None = None
    last_stage: str | None = None
    last_error: str | None = None
    block_reason: str | None = None
    consecutive_errors: int = 0


@dataclass(slots=True)
class ItemRecord:
    id: int
    run_id: int
    url: str
    status: str
    attempts: int
    last_error: str | None = None
    last_stage: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class RunSummary:
    run_id: int
    brand_id: int
    status: str
    platform: str | None
    total: int
    completed: int
    failed: int
    pending: int
    last_url: str | None
    last_stage: str | None
    last_error: str | None
    block_reason: str | None
    consecutive_errors: int
    started_at: datetime | None
    updated_at: datetime | None
    finished_at: datetime | None


class CatalogStore:
    def __init__(self, engine: Engine, *, max_attempts: int = CATALOG_MAX_ATTEMPTS) -> None:
        self.engine = engine
        self.max_attempts = max_attempts

    # brands

    def get_brand(self, brand_id: int) -> Brand | None:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(brands).where(brands.c.id == brand_id)).mappings().first()
        if row is None:
            return None
        return Brand(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            site_url=row["site_url"],
            ecommerce_platform=row["ecommerce_platform"],
            meta=dict(row["meta"] or {}),
        )

    def list_brand_rows(self, *, include_finished: bool = True) -> list[dict[str, Any]]:
        query = sa.select(brands).order_by(brands.c.name)
        if not include_finished:
            query = query.where(brands.c.catalog_finished_at.is_(None))
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def update_brand_platform(self, brand_id: int, platform: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                brands.update()
                .where(brands.c.id == brand_id, sa.or_(brands.c.ecommerce_platform.is_(None), brands.c.ecommerce_platform == "unknown"))
                .values(ecommerce_platform=platform)
            )

    def mark_brand_finished(self, brand_id: int, reason: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                brands.update()
                .where(brands.c.id == brand_id, brands.c.catalog_finished_at.is_(None))
                .values(catalog_finished_at=utcnow(), catalog_finished_reason=reason)
            )
        return result.rowcount > 0

    def update_brand_refresh(self, brand_id: int, *, completed_at: datetime, next_due_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                brands.update()
                .where(brands.c.id == brand_id)
                .values(refresh_last_completed_at=completed_at, refresh_next_due_at=next_due_at)
            )

    # runs

    def create_run_with_items(self, brand_id: int, platform: str | None, refs: Sequence[ProductRef]) -> RunRecord:
        """Insert a ``processing`` run and one ``pending`` item per distinct URL."""
        urls = list(dict.fromkeys(ref.url for ref in refs))
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                catalog_runs.insert().values(
                    brand_id=brand_id,
                    status=RUN_PROCESSING,
                    platform=platform,
                    total_items=len(urls),
                    started_at=now,
                    updated_at=now,
                    consecutive_errors=0,
                )
            )
            run_id = int(result.inserted_primary_key[0])
            if urls:
                conn.execute(
                    catalog_items.insert(),
                    [
                        {"run_id": run_id, "url": url, "status": ITEM_PENDING, "attempts": 0, "updated_at": now}
                        for url in urls
                    ],
                )
        logger.info("Created run %s for brand %s with %s items", run_id, brand_id, len(urls))
        return self.get_run(run_id)

    def get_run(self, run_id: int) -> RunRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(catalog_runs).where(catalog_runs.c.id == run_id)).mappings().first()
        return _record(RunRecord, row)

    def find_latest_run(self, brand_id: int) -> RunRecord | None:
        query = (
            sa.select(catalog_runs)
            .where(catalog_runs.c.brand_id == brand_id)
            .order_by(catalog_runs.c.started_at.desc(), catalog_runs.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            return _record(RunRecord, conn.execute(query).mappings().first())

    def find_active_run(self, brand_id: int, statuses: Sequence[str] = ACTIVE_RUN_STATUSES) -> RunRecord | None:
        query = (
            sa.select(catalog_runs)
            .where(catalog_runs.c.brand_id == brand_id, catalog_runs.c.status.in_(statuses))
            .order_by(catalog_runs.c.started_at.desc(), catalog_runs.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            return _record(RunRecord, conn.execute(query).mappings().first())

    def find_oldest_processing_run(self, brand_id: int | None = None) -> RunRecord | None:
        query = sa.select(catalog_runs).where(catalog_runs.c.status == RUN_PROCESSING)
        if brand_id is not None:
            query = query.where(catalog_runs.c.brand_id == brand_id)
        query = query.order_by(catalog_runs.c.updated_at.asc(), catalog_runs.c.id.asc()).limit(1)
        with self.engine.connect() as conn:
            return _record(RunRecord, conn.execute(query).mappings().first())

    def mark_run_status(
        self,
        run_id: int,
        status: str,
        *,
        expected: Sequence[str] | None = None,
        **values: Any,
    ) -> bool:
        """Move a run to ``status`` when the state machine allows it.

        ``expected`` narrows the statuses the run may currently be in.
        """
        allowed = RUN_TRANSITIONS.get(status, ())
        if expected is not None:
            allowed = tuple(current for current in allowed if current in expected)
        now = utcnow()
        values.setdefault("updated_at", now)
        if status == RUN_COMPLETED:
            values.setdefault("finished_at", now)
        if status == RUN_PROCESSING:
            values.setdefault("block_reason", None)
        with self.engine.begin() as conn:
            result = conn.execute(
                catalog_runs.update()
                .where(catalog_runs.c.id == run_id, catalog_runs.c.status.in_(allowed))
                .values(status=status, **values)
            )
        changed = result.rowcount > 0
        if changed:
            logger.info("Run %s -> %s", run_id, status)
        return changed

    def update_run_after_item(
        self,
        run_id: int,
        *,
        last_url: str | None,
        last_stage: str | None,
        last_error: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "last_url": last_url,
            "last_stage": last_stage,
            "last_error": last_error,
            "updated_at": utcnow(),
        }
        with self.engine.begin() as conn:
            conn.execute(catalog_runs.update().where(catalog_runs.c.id == run_id).values(**values))

    def record_run_error(
        self,
        run_id: int,
        *,
        error: str,
        stage: str | None,
        url: str | None,
        limit: int,
    ) -> tuple[int, bool]:
        """Atomically bump the consecutive-error counter; block the run at ``limit``.

        Returns the new counter value and whether this call blocked the run.
        """
        now = utcnow()
        with self.engine.begin() as conn:
            count = conn.execute(
                catalog_runs.update()
                .where(catalog_runs.c.id == run_id)
                .values(
                    consecutive_errors=catalog_runs.c.consecutive_errors + 1,
                    last_error=error,
                    last_stage=stage,
                    last_url=url,
                    updated_at=now,
                )
                .returning(catalog_runs.c.consecutive_errors)
            ).scalar_one()
            blocked = False
            if count >= limit:
                result = conn.execute(
                    catalog_runs.update()
                    .where(catalog_runs.c.id == run_id, catalog_runs.c.status == RUN_PROCESSING)
                    .values(status=RUN_BLOCKED, block_reason=f"consecutive_errors:{count}", updated_at=now)
                )
                blocked = result.rowcount > 0
        if blocked:
            logger.warning("Run %s blocked after %s consecutive errors", run_id, count)
        return int(count), blocked

    def block_run(self, run_id: int, reason: str, *, error: str | None = None, url: str | None = None) -> bool:
        blocked = self.mark_run_status(run_id, RUN_BLOCKED, block_reason=reason, last_error=error, last_url=url)
        if blocked:
            logger.warning("Run %s blocked: %s", run_id, reason)
        return blocked

    def reset_run_errors(self, run_id: int) -> None:
        """Zero the breaker counter after a successful item."""
        with self.engine.begin() as conn:
            conn.execute(
                catalog_runs.update()
                .where(catalog_runs.c.id == run_id, catalog_runs.c.consecutive_errors > 0)
                .values(consecutive_errors=0)
            )

    # items

    def get_item(self, item_id: int) -> ItemRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(catalog_items).where(catalog_items.c.id == item_id)).mappings().first()
        return _record(ItemRecord, row)

    def list_items(self, run_id: int) -> list[ItemRecord]:
        query = sa.select(catalog_items).where(catalog_items.c.run_id == run_id).order_by(catalog_items.c.id)
        with self.engine.connect() as conn:
            return [_record(ItemRecord, row) for row in conn.execute(query).mappings()]

    def list_pending_items(self, run_id: int, limit: int) -> list[ItemRecord]:
        """Runnable items, oldest first: pending or failed with attempts left."""
        query = (
            sa.select(catalog_items)
            .where(
                catalog_items.c.run_id == run_id,
                catalog_items.c.status.in_(RUNNABLE_ITEM_STATUSES),
                catalog_items.c.attempts < self.max_attempts,
            )
            .order_by(catalog_items.c.updated_at.asc(), catalog_items.c.id.asc())
            .limit(max(0, limit))
        )
        with self.engine.connect() as conn:
            return [_record(ItemRecord, row) for row in conn.execute(query).mappings()]

    def mark_items_queued(self, item_ids: Iterable[int]) -> list[int]:
        """Flag runnable items as handed to the broker; returns the ids actually flagged."""
        queued: list[int] = []
        now = utcnow()
        with self.engine.begin() as conn:
            for item_id in item_ids:
                result = conn.execute(
                    catalog_items.update()
                    .where(
                        catalog_items.c.id == item_id,
                        catalog_items.c.status.in_(RUNNABLE_ITEM_STATUSES),
                        catalog_items.c.attempts < self.max_attempts,
                    )
                    .values(status=ITEM_QUEUED, updated_at=now)
                )
                if result.rowcount:
                    queued.append(item_id)
        return queued

    def claim_item(self, item_id: int, *, stuck_before: datetime) -> bool:
        """Take ownership of an item and count the attempt.

        Succeeds only for runnable or queued items with attempts left, or for
        ``processing`` items whose owner went silent before ``stuck_before``.
        """
        now = utcnow()
        items = catalog_items.c
        with self.engine.begin() as conn:
            result = conn.execute(
                catalog_items.update()
                .where(
                    items.id == item_id,
                    items.attempts < self.max_attempts,
                    sa.or_(
                        items.status.in_((ITEM_PENDING, ITEM_FAILED, ITEM_QUEUED)),
                        sa.and_(items.status == ITEM_PROCESSING, items.updated_at < stuck_before),
                    ),
                )
                .values(status=ITEM_PROCESSING, attempts=items.attempts + 1, started_at=now, updated_at=now)
            )
        return result.rowcount > 0

    def complete_item(self, item_id: int, *, stage: str | None = None) -> None:
        now = utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                catalog_items.update()
                .where(catalog_items.c.id == item_id)
                .values(status=ITEM_COMPLETED, last_error=None, last_stage=stage, completed_at=now, updated_at=now)
            )

    def fail_item(self, item_id: int, error: str, *, stage: str | None = None, exhaust: bool = False) -> None:
        """Mark an item failed; ``exhaust`` spends its remaining attempts."""
        values: dict[str, Any] = {
            "status": ITEM_FAILED,
            "last_error": error,
            "last_stage": stage,
            "updated_at": utcnow(),
        }
        if exhaust:
            values["attempts"] = sa.case(
                (catalog_items.c.attempts < self.max_attempts, self.max_attempts),
                else_=catalog_items.c.attempts,
            )
        with self.engine.begin() as conn:
            conn.execute(catalog_items.update().where(catalog_items.c.id == item_id).values(**values))

    def release_item(self, item_id: int) -> bool:
        """Return a queued or in-flight item to ``pending`` without touching attempts."""
        with self.engine.begin() as conn:
            result = conn.execute(
                catalog_items.update()
                .where(catalog_items.c.id == item_id, catalog_items.c.status.in_((ITEM_QUEUED, ITEM_PROCESSING)))
                .values(status=ITEM_PENDING, updated_at=utcnow())
            )
        return result.rowcount > 0

    def count_remaining_items(self, run_id: int) -> int:
        """Items that still need work: runnable with attempts left, queued, or in flight."""
        items = catalog_items.c
        query = sa.select(sa.func.count()).select_from(catalog_items).where(
            items.run_id == run_id,
            sa.or_(
                sa.and_(
                    items.status.in_((ITEM_PENDING, ITEM_QUEUED, ITEM_FAILED)),
                    items.attempts < self.max_attempts,
                ),
                items.status == ITEM_PROCESSING,
            ),
        )
        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def reset_stuck_items(self, run_id: int, older_than: datetime) -> int:
        return self._reset_items(run_id, ITEM_PROCESSING, older_than)

    def reset_queued_items(self, run_id: int, older_than: datetime) -> int:
        return self._reset_items(run_id, ITEM_QUEUED, older_than)

    def _reset_items(self, run_id: int, status: str, older_than: datetime) -> int:
        # an item that already spent its last attempt is parked as failed, not pending
        next_status = sa.case(
            (catalog_items.c.attempts >= self.max_attempts, ITEM_FAILED),
            else_=ITEM_PENDING,
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                catalog_items.update()
                .where(
                    catalog_items.c.run_id == run_id,
                    catalog_items.c.status == status,
                    catalog_items.c.updated_at < older_than,
                )
                .values(status=next_status, updated_at=utcnow())
            )
        if result.rowcount:
            logger.info("Reset %s %s items to pending for run %s", result.rowcount, status, run_id)
        return result.rowcount

    def count_items_by_status(self, run_id: int) -> dict[str, int]:
        query = (
            sa.select(catalog_items.c.status, sa.func.count())
            .where(catalog_items.c.run_id == run_id)
            .group_by(catalog_items.c.status)
        )
        with self.engine.connect() as conn:
            return {status: int(count) for status, count in conn.execute(query)}

    def summarize_run(self, run_id: int) -> RunSummary | None:
        run = self.get_run(run_id)
        if run is None:
            return None
        counts = self.count_items_by_status(run_id)
        completed = counts.get(ITEM_COMPLETED, 0)
        failed = counts.get(ITEM_FAILED, 0)
        return RunSummary(
            run_id=run.id,
            brand_id=run.brand_id,
            status=run.status,
            platform=run.platform,
            total=run.total_items,
            completed=completed,
            failed=failed,
            pending=max(0, run.total_items - completed - failed),
            last_url=run.last_url,
            last_stage=run.last_stage,
            last_error=run.last_error,
            block_reason=run.block_reason,
            consecutive_errors=run.consecutive_errors,
            started_at=run.started_at,
            updated_at=run.updated_at,
            finished_at=run.finished_at,
        )

    def finalize_run_if_idle(self, run_id: int) -> bool:
        """Complete a ``processing`` run that has nothing left to do."""
        if self.count_remaining_items(run_id) > 0:
            return False
        return self.mark_run_status(run_id, RUN_COMPLETED)
