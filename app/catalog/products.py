"""Product and variant persistence with price/stock history."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from app.catalog.types import CanonicalProduct, CanonicalVariant
from app.db.tables import price_history, products, stock_history, variants
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UpsertSummary:
    product_id: int
    created: bool
    variants_created: int = 0
    price_changes: int = 0
    stock_changes: int = 0


class ProductWriter:
    """Upserts canonical products keyed by (brand, source URL) or external id.

    Re-writing the same product is idempotent: no duplicate rows, and
    history rows are appended only when a price or stock value changes.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def upsert(self, brand_id: int, product: CanonicalProduct) -> UpsertSummary:
        return await asyncio.get_running_loop().run_in_executor(None, self.upsert_sync, brand_id, product)

    def upsert_sync(self, brand_id: int, product: CanonicalProduct) -> UpsertSummary:
        with self.engine.begin() as conn:
            product_id, created = self._ensure_product(conn, brand_id, product)
            summary = UpsertSummary(product_id=product_id, created=created)
            for variant in product.variants:
                variant_created, price_changed, stock_changed = self._ensure_variant(conn, product_id, variant)
                summary.variants_created += int(variant_created)
                summary.price_changes += int(price_changed)
                summary.stock_changes += int(stock_changed)
        logger.debug(
            "Upserted product %s (%s) with %s variants",
            summary.product_id,
            "new" if created else "existing",
            len(product.variants),
        )
        return summary

    def _find_product(self, conn: Connection, brand_id: int, product: CanonicalProduct) -> dict[str, Any] | None:
        conditions = [products.c.source_url == product.source_url]
        if product.external_id:
            conditions.append(products.c.external_id == product.external_id)
        row = conn.execute(
            sa.select(products)
            .where(products.c.brand_id == brand_id, sa.or_(*conditions))
            .order_by(products.c.id)
            .limit(1)
        ).mappings().first()
        return dict(row) if row else None

    def _ensure_product(self, conn: Connection, brand_id: int, product: CanonicalProduct) -> tuple[int, bool]:
        now = utcnow()
        existing = self._find_product(conn, brand_id, product)
        previous_meta = (existing or {}).get("meta") or {}
        values = {
            "external_id": product.external_id or (existing or {}).get("external_id"),
            "name": product.name,
            "description": product.description,
            "category": product.category,
            "subcategory": product.subcategory,
            "style_tags": product.style_tags,
            "material_tags": product.material_tags,
            "pattern_tags": product.pattern_tags,
            "occasion_tags": product.occasion_tags,
            "gender": product.gender,
            "season": product.season,
            "currency": product.currency,
            "source_url": product.source_url,
            "image_cover_url": product.image_cover_url,
            "meta": {**previous_meta, **product.metadata, "scraped_at": now.isoformat()},
            "updated_at": now,
        }
        if existing:
            # Keep what is already known when the new scrape lacks it.
            for key in ("description", "category", "subcategory", "gender", "season", "currency", "image_cover_url"):
                if values[key] is None:
                    values[key] = existing.get(key)
            for key in ("style_tags", "material_tags", "pattern_tags", "occasion_tags"):
                if not values[key]:
                    values[key] = existing.get(key) or []
            conn.execute(products.update().where(products.c.id == existing["id"]).values(**values))
            return int(existing["id"]), False
        result = conn.execute(products.insert().values(brand_id=brand_id, created_at=now, **values))
        return int(result.inserted_primary_key[0]), True

    def _ensure_variant(self, conn: Connection, product_id: int, variant: CanonicalVariant) -> tuple[bool, bool, bool]:
        now = utcnow()
        existing = conn.execute(
            sa.select(variants).where(variants.c.product_id == product_id, variants.c.sku == variant.sku)
        ).mappings().first()
        values = {
            "color": variant.color,
            "size": variant.size,
            "fit": variant.fit,
            "material": variant.material,
            "price": variant.price,
            "compare_at_price": variant.compare_at_price,
            "currency": variant.currency,
            "stock": variant.stock,
            "stock_status": variant.stock_status,
            "images": variant.images,
            "updated_at": now,
        }
        if existing is None:
            result = conn.execute(
                variants.insert().values(
                    product_id=product_id,
                    sku=variant.sku,
                    meta=variant.metadata,
                    created_at=now,
                    **values,
                )
            )
            variant_id = int(result.inserted_primary_key[0])
            self._record_price(conn, variant_id, variant, now)
            self._record_stock(conn, variant_id, variant, now)
            return True, True, True

        price_changed = _price(existing["price"]) != _price(variant.price)
        stock_changed = existing["stock"] != variant.stock or existing["stock_status"] != variant.stock_status
        meta = dict(existing["meta"] or {})
        meta.update(variant.metadata)
        if price_changed:
            meta["last_price_changed_at"] = now.isoformat()
        if stock_changed:
            meta["last_stock_changed_at"] = now.isoformat()
        conn.execute(variants.update().where(variants.c.id == existing["id"]).values(meta=meta, **values))
        if price_changed:
            self._record_price(conn, existing["id"], variant, now)
        if stock_changed:
            self._record_stock(conn, existing["id"], variant, now)
        return False, price_changed, stock_changed

    @staticmethod
    def _record_price(conn: Connection, variant_id: int, variant: CanonicalVariant, now) -> None:
        conn.execute(
            price_history.insert().values(
                variant_id=variant_id, price=variant.price, currency=variant.currency, recorded_at=now
            )
        )

    @staticmethod
    def _record_stock(conn: Connection, variant_id: int, variant: CanonicalVariant, now) -> None:
        conn.execute(
            stock_history.insert().values(
                variant_id=variant_id, stock=variant.stock, stock_status=variant.stock_status, recorded_at=now
            )
        )


def _price(value: float | None) -> float | None:
    return None if value is None else round(float(value), 2)
