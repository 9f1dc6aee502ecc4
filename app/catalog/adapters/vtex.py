"""VTEX adapter backed by the public catalog search API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import unquote, urlparse

import httpx

from app.catalog.errors import RobotsDisallowed
from app.catalog.types import AdapterContext, CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.catalog.utils import dedupe_refs, normalize_url, parse_price_value, safe_origin, to_str_or_none

logger = logging.getLogger(__name__)

PLATFORM = "vtex"
SEARCH_API = "/api/catalog_system/pub/products/search"
PAGE_SIZE = 50
DEFAULT_CURRENCY = "COP"


def extract_link_text(url: str) -> str | None:
    """``/camisa-lino/p`` -> ``camisa-lino``."""
    parts = [part for part in urlparse(url).path.split("/") if part]
    if parts and parts[-1].lower() == "p":
        parts.pop()
    return unquote(parts[-1]) if parts else None


async def discover_products(ctx: AdapterContext, limit: int = 200) -> list[ProductRef]:
    base = normalize_url(ctx.site_url)
    if not base:
        return []
    origin = safe_origin(base)
    refs: list[ProductRef] = []
    start = 0
    try:
        while len(refs) < limit:
            # the search API caps each window at 50 products, both ends inclusive
            end = start + min(PAGE_SIZE, limit - len(refs)) - 1
            result = await ctx.http.fetch_text(f"{origin}{SEARCH_API}?_from={start}&_to={end}")
            data = result.json() if result.status < 400 else None
            if not isinstance(data, list) or not data:
                break
            for product in data:
                if not isinstance(product, dict):
                    continue
                link_text = to_str_or_none(product.get("linkText"))
                url = product.get("link") or (f"{origin}/{link_text}/p" if link_text else None)
                if url:
                    refs.append(
                        ProductRef(url=url, external_id=to_str_or_none(product.get("productId")), handle=link_text)
                    )
            if len(data) < PAGE_SIZE:
                break
            start += PAGE_SIZE
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("VTEX discovery failed for %s: %s", origin, exc)
    return dedupe_refs(refs, limit)


async def fetch_product(ctx: AdapterContext, ref: ProductRef) -> RawProduct | None:
    base = normalize_url(ctx.site_url)
    link_text = ref.handle or extract_link_text(ref.url)
    if not base or not link_text:
        return None
    result = await ctx.http.fetch_text(f"{safe_origin(base)}{SEARCH_API}/{link_text}/p")
    if result.status >= 400:
        return None
    data = result.json()
    product = data[0] if isinstance(data, list) and data else None
    if not isinstance(product, dict):
        return None

    items = [item for item in product.get("items") or [] if isinstance(item, dict)]
    variants = [_variant(item) for item in items]
    images: list[str] = []
    for variant in variants:
        images.extend(image for image in variant.images if image not in images)

    return RawProduct(
        source_url=ref.url,
        external_id=to_str_or_none(product.get("productId")) or ref.external_id,
        title=product.get("productName"),
        description=product.get("description"),
        vendor=product.get("brand"),
        currency=next((variant.currency for variant in variants if variant.currency), DEFAULT_CURRENCY),
        images=images,
        options=_options(items),
        variants=variants,
        metadata={
            "platform": PLATFORM,
            "handle": link_text,
            "categories": product.get("categories") or [],
            "raw": {"productId": product.get("productId")},
        },
    )


def _options(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    values: dict[str, list[str]] = {}
    for item in items:
        for name in item.get("variations") or []:
            for value in item.get(name) or []:
                if value not in values.setdefault(name, []):
                    values[name].append(value)
    return [{"name": name, "values": found} for name, found in values.items()]


def _variant(item: dict[str, Any]) -> RawVariant:
    sellers = item.get("sellers") or [{}]
    offer = (sellers[0] or {}).get("commertialOffer") or {}
    references = item.get("referenceId") or []
    reference = references[0].get("Value") if references and isinstance(references[0], dict) else None
    options = {}
    for name in item.get("variations") or []:
        values = item.get(name) or []
        if values:
            options[name] = str(values[0])
    images = [image.get("imageUrl") for image in item.get("images") or [] if image.get("imageUrl")]
    quantity = offer.get("AvailableQuantity")
    stock = quantity if isinstance(quantity, int) and not isinstance(quantity, bool) else None
    return RawVariant(
        id=to_str_or_none(item.get("itemId")),
        sku=to_str_or_none(reference) or to_str_or_none(item.get("itemId")),
        options=options,
        price=parse_price_value(offer.get("Price")),
        compare_at_price=parse_price_value(offer.get("ListPrice")),
        currency=offer.get("CurrencyCode") or DEFAULT_CURRENCY,
        available=stock > 0 if stock is not None else None,
        stock=stock,
        image=images[0] if images else None,
        images=images,
    )


adapter = CatalogAdapter(platform=PLATFORM, discover_products=discover_products, fetch_product=fetch_product)
