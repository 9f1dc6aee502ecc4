"""Item-level extraction: fetch, normalize, persist, account."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from app.catalog import constants
from app.catalog.errors import ErrorKind, ProductNotFound, classify_error, describe_error
from app.catalog.http import CatalogHttpClient
from app.catalog.llm import PdpLlm, extract_html_signals
from app.catalog.normalizer import normalize_product
from app.catalog.products import ProductWriter
from app.catalog.refresh import handle_run_completed
from app.catalog.registry import get_adapter, is_generic_platform
from app.catalog.store import CatalogStore, ItemRecord, RunRecord
from app.catalog.types import AdapterContext, Brand, CatalogAdapter, ProductRef, RawProduct
from app.utils.dates import minutes_ago, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessResult:
    item_id: int
    status: str
    reason: str | None = None
    error: str | None = None
    error_kind: str | None = None
    stage: str | None = None
    created: bool | None = None
    variants_created: int = 0
    run_status: str | None = None

    @property
    def progressed(self) -> bool:
        return self.status in {"completed", "failed", "queued"}

    def as_dict(self) -> dict[str, object]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class _Progress:
    __slots__ = ("stage",)

    def __init__(self) -> None:
        self.stage = "claim"


class ItemProcessor:
    """Processes one catalog item end to end.

    ``process_item_by_id`` never raises: every failure is classified,
    written to the item and folded into the run's aggregates.
    """

    def __init__(
        self,
        store: CatalogStore,
        writer: ProductWriter,
        http: CatalogHttpClient,
        llm: PdpLlm | None = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.http = http
        self.llm = llm

    async def process_item_by_id(self, item_id: int) -> ProcessResult:
        try:
            return await self._process(item_id)
        except Exception as exc:  # pragma: no cover - database outage
            logger.exception("Unexpected failure processing item %s", item_id)
            return ProcessResult(item_id, "failed", error=describe_error(exc), error_kind=ErrorKind.SYSTEMIC.value)

    async def _process(self, item_id: int) -> ProcessResult:
        item = self.store.get_item(item_id)
        if item is None:
            return ProcessResult(item_id, "not_found")
        run = self.store.get_run(item.run_id)
        if run is None or run.status != constants.RUN_PROCESSING:
            self.store.release_item(item.id)
            return ProcessResult(item_id, "skipped", reason=run.status if run else "missing_run")
        if item.status == constants.ITEM_COMPLETED:
            return ProcessResult(item_id, "already_completed")
        if item.attempts >= self.store.max_attempts:
            return ProcessResult(item_id, "max_attempts")

        if not self.store.claim_item(item.id, stuck_before=minutes_ago(constants.stuck_minutes())):
            return ProcessResult(item_id, "skipped", reason="already_claimed")

        brand = self.store.get_brand(run.brand_id)
        if brand is None or not brand.site_url:
            self.store.fail_item(item.id, "missing_site_url", stage="claim", exhaust=True)
            self._after_item(run.id)
            return ProcessResult(item_id, "failed", error="missing_site_url", error_kind=ErrorKind.SOFT.value)

        progress = _Progress()
        adapter = get_adapter(run.platform or brand.ecommerce_platform)
        ctx = AdapterContext(
            brand=Brand(
                id=brand.id,
                name=brand.name,
                slug=brand.slug,
                site_url=brand.site_url,
                ecommerce_platform=run.platform or brand.ecommerce_platform,
                meta=brand.meta,
            ),
            http=self.http,
        )
        try:
            raw = await self._fetch(adapter, ctx, item, progress)
            progress.stage = "normalize"
            product = normalize_product(raw, adapter.platform)
            progress.stage = "upsert"
            summary = await self.writer.upsert(brand.id, product)
        except Exception as exc:
            result = self._handle_failure(run, item, exc, progress.stage)
        else:
            self.store.complete_item(item.id, stage=progress.stage)
            self.store.update_run_after_item(run.id, last_url=item.url, last_stage=progress.stage)
            self.store.reset_run_errors(run.id)
            result = ProcessResult(
                item_id,
                "completed",
                stage=progress.stage,
                created=summary.created,
                variants_created=summary.variants_created,
            )
        result.run_status = self._after_item(run.id)
        return result

    async def _fetch(
        self,
        adapter: CatalogAdapter,
        ctx: AdapterContext,
        item: ItemRecord,
        progress: _Progress,
    ) -> RawProduct:
        progress.stage = "fetch"
        ref = ProductRef(url=item.url)
        raw = await adapter.fetch_product(ctx, ref)
        if raw is None and self._can_use_llm(adapter, ctx.brand):
            raw = await self._fetch_with_llm(item.url, progress)
        if raw is None:
            raise ProductNotFound(f"Could not fetch product ({adapter.platform}) for {item.url}")
        return raw

    def _can_use_llm(self, adapter: CatalogAdapter, brand: Brand) -> bool:
        if self.llm is None or not self.llm.enabled:
            return False
        return is_generic_platform(adapter.platform) or (brand.ecommerce_platform or "").lower() == "unknown"

    async def _fetch_with_llm(self, url: str, progress: _Progress) -> RawProduct:
        progress.stage = "llm_classify"
        page = await self.http.fetch_text(url)
        if not page.ok:
            raise ProductNotFound(f"Could not fetch HTML ({page.status}) for {url}")
        text, images = extract_html_signals(page.text, page.final_url or url)
        decision = await self.llm.classify_pdp(url, page.text, text, images)
        if not decision.is_pdp or decision.confidence < constants.pdp_llm_min_confidence():
            raise ProductNotFound(f"llm_pdp_false:{decision.confidence:.2f}:{decision.reason}")
        progress.stage = "llm_extract"
        raw = await self.llm.extract_product(url, page.text, text, images)
        if not raw.images:
            raw.images = images
        raw.metadata["llm"] = {"pdp": decision.model_dump(), "extracted_at": utcnow().isoformat()}
        return raw

    def _handle_failure(self, run: RunRecord, item: ItemRecord, exc: Exception, stage: str) -> ProcessResult:
        kind = classify_error(exc)
        message = describe_error(exc)
        result = ProcessResult(item.id, "failed", error=message, error_kind=kind.value, stage=stage)

        if kind is ErrorKind.SOFT:
            logger.info("Item %s is not a product (%s): %s", item.id, item.url, message)
            self.store.fail_item(item.id, message, stage=stage, exhaust=True)
            self.store.update_run_after_item(run.id, last_url=item.url, last_stage=stage, last_error=message)
            self.store.reset_run_errors(run.id)
            return result

        logger.warning("Item %s failed at %s (%s): %s", item.id, stage, kind.value, message)
        self.store.fail_item(item.id, message, stage=stage)
        if kind is ErrorKind.FATAL:
            self.store.block_run(run.id, f"fatal:{message[:200]}", error=message, url=item.url)
        elif kind is ErrorKind.SYSTEMIC or constants.transient_counts_toward_breaker():
            self.store.record_run_error(
                run.id,
                error=message,
                stage=stage,
                url=item.url,
                limit=constants.consecutive_error_limit(),
            )
        else:
            self.store.update_run_after_item(run.id, last_url=item.url, last_stage=stage, last_error=message)
        return result

    def _after_item(self, run_id: int) -> str | None:
        if self.store.finalize_run_if_idle(run_id):
            handle_run_completed(self.store, run_id)
        run = self.store.get_run(run_id)
        return run.status if run else None
