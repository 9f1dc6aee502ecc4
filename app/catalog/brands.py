"""Brand seed list loading and upserting."""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
import yaml
from sqlalchemy.engine import Engine

from app.catalog.registry import normalize_platform
from app.catalog.utils import normalize_url
from app.db.tables import brands
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

BRANDS_PATH = pathlib.Path(__file__).with_name("brands.yml")


@dataclass(slots=True)
class BrandSeed:
    name: str
    slug: str
    site_url: str | None = None
    ecommerce_platform: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


def load_brands(path: pathlib.Path | None = None, limit: int | None = None) -> list[BrandSeed]:
    data = yaml.safe_load((path or BRANDS_PATH).read_text()) or []
    seeds = [BrandSeed(**item) for item in data]
    if limit:
        return seeds[:limit]
    return seeds


def upsert_brands(engine: Engine, seeds: list[BrandSeed]) -> dict[str, int]:
    """Insert new brands by slug and refresh site URL/platform on existing ones.

    Catalog and refresh bookkeeping columns are never touched.
    """
    created = updated = 0
    with engine.begin() as conn:
        for seed in seeds:
            values = {
                "name": seed.name,
                "site_url": normalize_url(seed.site_url),
                "ecommerce_platform": normalize_platform(seed.ecommerce_platform) if seed.ecommerce_platform else None,
            }
            existing = conn.execute(sa.select(brands.c.id).where(brands.c.slug == seed.slug)).scalar()
            if existing is None:
                conn.execute(
                    brands.insert().values(slug=seed.slug, meta=seed.meta or {}, created_at=utcnow(), **values)
                )
                created += 1
            else:
                conn.execute(brands.update().where(brands.c.id == existing).values(**values))
                updated += 1
    logger.info("Seeded brands: %s created, %s updated", created, updated)
    return {"created": created, "updated": updated}
