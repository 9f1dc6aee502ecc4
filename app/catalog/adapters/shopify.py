"""Shopify storefront adapter."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from app.catalog.errors import RobotsDisallowed
from app.catalog.sitemap import discover_from_sitemap
from app.catalog.types import AdapterContext, CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.catalog.utils import dedupe_refs, normalize_url, parse_price_value, safe_origin, to_str_or_none

logger = logging.getLogger(__name__)

PLATFORM = "shopify"
PRODUCT_HANDLE_RE = re.compile(r"/products/([^/?#.\"']+)")
PRODUCTS_JSON_PAGE_SIZE = 250
MAX_LISTING_PAGES = 10


def extract_handle(url: str) -> str | None:
    match = PRODUCT_HANDLE_RE.search(url)
    return match.group(1) if match else None


def _price(value: Any) -> float | None:
    # The .js endpoint reports integer cents; products.json reports decimal strings.
    if isinstance(value, int) and not isinstance(value, bool):
        return value / 100
    return parse_price_value(value)


async def discover_products(ctx: AdapterContext, limit: int = 200) -> list[ProductRef]:
    base = normalize_url(ctx.site_url)
    if not base:
        return []
    origin = safe_origin(base)
    try:
        urls = await discover_from_sitemap(ctx.http, base, limit * 3, product_aware=True)
        refs = [ProductRef(url=url, handle=extract_handle(url)) for url in urls if "/products/" in url]
        if refs:
            return dedupe_refs(refs, limit)
        refs = await _discover_via_products_json(ctx, origin, limit)
        if refs:
            return refs
        return await _discover_via_collections(ctx, origin, limit)
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("Shopify discovery failed for %s: %s", origin, exc)
        return []


async def _discover_via_products_json(ctx: AdapterContext, origin: str, limit: int) -> list[ProductRef]:
    refs: list[ProductRef] = []
    for page in range(1, MAX_LISTING_PAGES + 1):
        result = await ctx.http.fetch_text(f"{origin}/products.json?limit={PRODUCTS_JSON_PAGE_SIZE}&page={page}")
        data = result.json() if result.ok else None
        items = data.get("products") if isinstance(data, dict) else None
        if not items:
            break
        for item in items:
            handle = item.get("handle")
            if handle:
                refs.append(
                    ProductRef(
                        url=f"{origin}/products/{handle}",
                        external_id=to_str_or_none(item.get("id")),
                        handle=handle,
                    )
                )
        if len(refs) >= limit or len(items) < PRODUCTS_JSON_PAGE_SIZE:
            break
    return dedupe_refs(refs, limit)


async def _discover_via_collections(ctx: AdapterContext, origin: str, limit: int) -> list[ProductRef]:
    handles: list[str] = []
    for page in range(1, MAX_LISTING_PAGES + 1):
        result = await ctx.http.fetch_text(f"{origin}/collections/all?page={page}")
        if not result.ok:
            break
        new = [handle for handle in PRODUCT_HANDLE_RE.findall(result.text) if handle not in handles]
        if not new:
            break
        handles.extend(new)
        if len(handles) >= limit:
            break
    return [ProductRef(url=f"{origin}/products/{handle}", handle=handle) for handle in handles[:limit]]


async def fetch_product(ctx: AdapterContext, ref: ProductRef) -> RawProduct | None:
    base = normalize_url(ctx.site_url)
    handle = ref.handle or extract_handle(ref.url)
    if not base or not handle:
        return None
    result = await ctx.http.fetch_text(f"{safe_origin(base)}/products/{handle}.js")
    if result.status >= 400:
        return None
    data = result.json()
    if not isinstance(data, dict) or not data.get("variants"):
        return None

    option_names = [
        str(option.get("name") if isinstance(option, dict) else option).strip().lower()
        for option in data.get("options") or []
    ]
    currency = data.get("currency")
    images = [img if isinstance(img, str) else (img or {}).get("src") for img in data.get("images") or []]
    variants = [_variant(variant, option_names, currency) for variant in data.get("variants") or []]
    tags = data.get("tags")
    if isinstance(tags, str):
        tags = [tag.strip() for tag in tags.split(",") if tag.strip()]

    return RawProduct(
        source_url=ref.url,
        external_id=to_str_or_none(data.get("id")),
        title=data.get("title") or handle.replace("-", " ").title(),
        description=data.get("description") or data.get("body_html"),
        vendor=data.get("vendor"),
        currency=currency,
        images=[img for img in images if img],
        options=[
            {"name": option.get("name", ""), "values": option.get("values") or []}
            for option in data.get("options") or []
            if isinstance(option, dict)
        ],
        variants=variants,
        metadata={
            "platform": PLATFORM,
            "handle": handle,
            "product_type": data.get("product_type") or data.get("type"),
            "tags": tags or [],
        },
    )


def _variant(variant: dict[str, Any], option_names: list[str], currency: str | None) -> RawVariant:
    options: dict[str, str] = {}
    for index in range(3):
        value = variant.get(f"option{index + 1}")
        if not value:
            continue
        options[f"option{index + 1}"] = str(value)
        if index < len(option_names) and option_names[index]:
            options[option_names[index]] = str(value)
    featured = variant.get("featured_image") or {}
    image = featured.get("src") if isinstance(featured, dict) else None
    return RawVariant(
        id=to_str_or_none(variant.get("id")),
        sku=to_str_or_none(variant.get("sku")) or to_str_or_none(variant.get("id")),
        options=options,
        price=_price(variant.get("price")),
        compare_at_price=_price(variant.get("compare_at_price")),
        currency=currency,
        available=variant.get("available"),
        stock=variant.get("inventory_quantity") if isinstance(variant.get("inventory_quantity"), int) else None,
        image=image,
        images=[image] if image else [],
    )


adapter = CatalogAdapter(platform=PLATFORM, discover_products=discover_products, fetch_product=fetch_product)
