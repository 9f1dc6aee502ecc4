"""WooCommerce adapter backed by the public Store API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from app.catalog.adapters import generic
from app.catalog.errors import RobotsDisallowed
from app.catalog.types import AdapterContext, CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.catalog.utils import dedupe_refs, normalize_url, parse_price_value, safe_origin, to_str_or_none

logger = logging.getLogger(__name__)

PLATFORM = "woocommerce"
STORE_API = "/wp-json/wc/store/v1/products"
PAGE_SIZE = 50
MAX_PAGES = 20


def _minor_price(value: Any, minor_unit: Any) -> float | None:
    amount = parse_price_value(value)
    if amount is None:
        return None
    try:
        digits = int(minor_unit)
    except (TypeError, ValueError):
        digits = 2
    return amount / (10 ** digits) if digits > 0 else amount


def _slug(url: str) -> str | None:
    parts = [part for part in urlparse(url).path.split("/") if part]
    return parts[-1] if parts else None


async def discover_products(ctx: AdapterContext, limit: int = 200) -> list[ProductRef]:
    base = normalize_url(ctx.site_url)
    if not base:
        return []
    origin = safe_origin(base)
    refs: list[ProductRef] = []
    try:
        for page in range(1, MAX_PAGES + 1):
            result = await ctx.http.fetch_text(f"{origin}{STORE_API}?per_page={PAGE_SIZE}&page={page}")
            data = result.json() if result.ok else None
            if not isinstance(data, list) or not data:
                break
            for item in data:
                if isinstance(item, dict) and item.get("permalink"):
                    refs.append(ProductRef(url=item["permalink"], external_id=to_str_or_none(item.get("id"))))
            if len(refs) >= limit or len(data) < PAGE_SIZE:
                break
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("WooCommerce discovery failed for %s: %s", origin, exc)
    if refs:
        return dedupe_refs(refs, limit)
    return await generic.discover_products(ctx, limit)


async def fetch_product(ctx: AdapterContext, ref: ProductRef) -> RawProduct | None:
    base = normalize_url(ctx.site_url)
    if not base:
        return None
    origin = safe_origin(base)
    if ref.external_id:
        result = await ctx.http.fetch_text(f"{origin}{STORE_API}/{ref.external_id}")
        data = result.json() if result.ok else None
    else:
        slug = _slug(ref.url)
        result = await ctx.http.fetch_text(f"{origin}{STORE_API}?slug={slug}") if slug else None
        payload = result.json() if result is not None and result.ok else None
        data = payload[0] if isinstance(payload, list) and payload else None
    if not isinstance(data, dict):
        return await generic.fetch_product(ctx, ref)
    return _to_raw(ref, data)


def _to_raw(ref: ProductRef, data: dict[str, Any]) -> RawProduct:
    prices = data.get("prices") or {}
    minor = prices.get("currency_minor_unit", 2)
    currency = prices.get("currency_code")
    price = _minor_price(prices.get("price"), minor)
    regular = _minor_price(prices.get("regular_price"), minor)
    images = [img.get("src") for img in data.get("images") or [] if isinstance(img, dict) and img.get("src")]
    available = data.get("is_in_stock")

    variants: list[RawVariant] = []
    for variation in data.get("variations") or []:
        if not isinstance(variation, dict):
            continue
        options = {
            str(attr.get("name", "")).lower(): str(attr.get("value", ""))
            for attr in variation.get("attributes") or []
            if isinstance(attr, dict)
        }
        variants.append(
            RawVariant(
                id=to_str_or_none(variation.get("id")),
                sku=to_str_or_none(variation.get("id")),
                options=options,
                price=price,
                compare_at_price=regular if regular and price and regular > price else None,
                currency=currency,
                available=available,
                image=images[0] if images else None,
                images=images[:1],
            )
        )
    if not variants:
        variants.append(
            RawVariant(
                id=to_str_or_none(data.get("id")),
                sku=to_str_or_none(data.get("sku")) or to_str_or_none(data.get("id")),
                price=price,
                compare_at_price=regular if regular and price and regular > price else None,
                currency=currency,
                available=available,
                image=images[0] if images else None,
                images=images[:3],
            )
        )
    categories = [cat.get("name") for cat in data.get("categories") or [] if isinstance(cat, dict)]
    return RawProduct(
        source_url=ref.url,
        external_id=to_str_or_none(data.get("id")),
        title=data.get("name"),
        description=data.get("description") or data.get("short_description"),
        currency=currency,
        images=images,
        variants=variants,
        metadata={
            "platform": PLATFORM,
            "product_type": categories[0] if categories else None,
            "tags": [tag.get("name") for tag in data.get("tags") or [] if isinstance(tag, dict)],
        },
    )


adapter = CatalogAdapter(platform=PLATFORM, discover_products=discover_products, fetch_product=fetch_product)
