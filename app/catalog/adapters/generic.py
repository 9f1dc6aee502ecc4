"""Fallback adapter for custom storefronts.

Products are read from embedded schema.org JSON-LD, backed by Open Graph /
product meta tags. Pages that look like listings or editorial content are
rejected (``None``) so heuristic discovery noise never reaches the catalog.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from bs4 import BeautifulSoup

from app.catalog.errors import RobotsDisallowed
from app.catalog.sitemap import discover_from_sitemap
from app.catalog.types import AdapterContext, CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.catalog.utils import (
    absolute_url,
    dedupe_refs,
    is_likely_product_url,
    normalize_url,
    parse_price_value,
    safe_origin,
    same_origin,
    to_str_or_none,
)

logger = logging.getLogger(__name__)

PLATFORM = "custom"
LISTING_PATHS = ("/", "/shop", "/tienda", "/productos", "/producto", "/store", "/catalogo", "/catalog")
ADD_TO_CART_RE = re.compile(r"add to cart|agregar al carrito|añadir al carrito|comprar ahora|buy now", re.IGNORECASE)
PRICE_HINT_RE = re.compile(r"\$\s?\d|\b(COP|USD|EUR|MXN|ARS|CLP)\b")
LISTING_LINK_THRESHOLD = 3


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def extract_json_ld(soup: BeautifulSoup) -> list[Any]:
    blocks: list[Any] = []
    for tag in soup.find_all("script", type=lambda value: value and "ld+json" in value.lower()):
        raw = tag.string or tag.get_text() or ""
        try:
            blocks.append(json.loads(raw.strip()))
        except ValueError:
            continue
    return blocks


def _is_product_type(value: Any) -> bool:
    if isinstance(value, list):
        return any(_is_product_type(entry) for entry in value)
    return isinstance(value, str) and "product" in value.lower()


def find_product_node(blocks: list[Any]) -> dict[str, Any] | None:
    for block in blocks:
        candidates = block if isinstance(block, list) else [block]
        for node in candidates:
            if not isinstance(node, dict):
                continue
            if _is_product_type(node.get("@type")):
                return node
            for child in node.get("@graph") or []:
                if isinstance(child, dict) and _is_product_type(child.get("@type")):
                    return child
    return None


def extract_meta(soup: BeautifulSoup) -> dict[str, str]:
    meta: dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = (tag.get("property") or tag.get("name") or "").strip().lower()
        content = tag.get("content")
        if key and content and key not in meta:
            meta[key] = content.strip()
    if "title" not in meta and soup.title and soup.title.string:
        meta["title"] = soup.title.string.strip()
    return meta


def _offers(node: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not node:
        return []
    offers = node.get("offers")
    if isinstance(offers, dict) and isinstance(offers.get("offers"), list):
        offers = offers["offers"]
    if isinstance(offers, dict):
        offers = [offers]
    return [offer for offer in offers or [] if isinstance(offer, dict)]


def _offer_price(offer: dict[str, Any]) -> tuple[float | None, str | None]:
    price_spec = offer.get("priceSpecification")
    if isinstance(price_spec, list):
        price_spec = price_spec[0] if price_spec else None
    price_spec = price_spec if isinstance(price_spec, dict) else {}
    price = offer.get("price", offer.get("lowPrice", price_spec.get("price")))
    currency = offer.get("priceCurrency") or price_spec.get("priceCurrency")
    return parse_price_value(price), currency


def _available(value: Any) -> bool | None:
    if not value:
        return None
    return "outofstock" not in str(value).lower().replace(" ", "")


def _images(node: dict[str, Any] | None, meta: dict[str, str]) -> list[str]:
    image = (node or {}).get("image")
    if isinstance(image, dict):
        image = image.get("url")
    if isinstance(image, str):
        return [image]
    if isinstance(image, list):
        urls = [entry.get("url") if isinstance(entry, dict) else entry for entry in image]
        return [url for url in urls if isinstance(url, str) and url]
    for key in ("og:image", "twitter:image"):
        if meta.get(key):
            return [meta[key]]
    return []


def _count_product_links(soup: BeautifulSoup, page_url: str) -> int:
    origin = safe_origin(page_url)
    count = 0
    for anchor in soup.find_all("a", href=True):
        url = absolute_url(anchor["href"], page_url)
        if url.rstrip("/") != page_url.rstrip("/") and same_origin(url, origin) and is_likely_product_url(url):
            count += 1
            if count >= LISTING_LINK_THRESHOLD:
                break
    return count


def looks_like_product_page(soup: BeautifulSoup, html: str, node: dict[str, Any] | None, meta: dict[str, str], url: str) -> bool:
    if node:
        return True
    og_type = meta.get("og:type", "").lower()
    has_price_meta = bool(meta.get("product:price:amount") or meta.get("og:price:amount"))
    has_product_meta = "product" in og_type or has_price_meta or bool(meta.get("product:availability"))
    title = meta.get("og:title") or meta.get("title") or (soup.h1.get_text(" ", strip=True) if soup.h1 else None)
    has_hints = bool(ADD_TO_CART_RE.search(html)) or (
        bool(PRICE_HINT_RE.search(html)) and bool(meta.get("og:image")) and bool(title)
    )
    if not has_product_meta and not has_hints:
        return False
    if og_type in {"website", "article"} and not has_price_meta:
        return False
    return _count_product_links(soup, url) < LISTING_LINK_THRESHOLD


def parse_product_html(html: str, url: str) -> RawProduct | None:
    soup = parse_html(html)
    node = find_product_node(extract_json_ld(soup))
    meta = extract_meta(soup)
    if not looks_like_product_page(soup, html, node, meta, url):
        return None

    node = node or {}
    images = _images(node, meta)
    offers = _offers(node)
    brand = node.get("brand")
    title = (
        node.get("name")
        or meta.get("og:title")
        or meta.get("title")
        or (soup.h1.get_text(" ", strip=True) if soup.h1 else None)
    )
    currency = meta.get("product:price:currency") or meta.get("og:price:currency")

    variants: list[RawVariant] = []
    for child in node.get("hasVariant") or []:
        if not isinstance(child, dict):
            continue
        child_offers = _offers(child)
        price, child_currency = _offer_price(child_offers[0]) if child_offers else (None, None)
        child_images = _images(child, {})
        variants.append(
            RawVariant(
                sku=to_str_or_none(child.get("sku")),
                options={
                    key: str(child[key]) for key in ("color", "size", "material") if child.get(key)
                },
                price=price,
                currency=child_currency or currency,
                available=_available(child_offers[0].get("availability")) if child_offers else None,
                image=child_images[0] if child_images else None,
                images=child_images,
            )
        )
    if not variants:
        for index, offer in enumerate(offers or [{}]):
            price, offer_currency = _offer_price(offer)
            if price is None and index == 0:
                price = parse_price_value(meta.get("product:price:amount") or meta.get("og:price:amount"))
            variants.append(
                RawVariant(
                    sku=to_str_or_none(offer.get("sku")) or (to_str_or_none(node.get("sku")) if index == 0 else None),
                    price=price,
                    currency=offer_currency or currency,
                    available=_available(offer.get("availability") or meta.get("product:availability")),
                    image=images[0] if images else None,
                    images=images[:3],
                )
            )
            if len(offers) > 1 and not offer.get("sku"):
                break

    return RawProduct(
        source_url=url,
        external_id=to_str_or_none(node.get("sku")) or to_str_or_none(node.get("productID")),
        title=title,
        description=node.get("description") or meta.get("description") or meta.get("og:description"),
        vendor=brand.get("name") if isinstance(brand, dict) else to_str_or_none(brand),
        currency=variants[0].currency if variants else currency,
        images=images,
        variants=variants,
        metadata={
            "platform": PLATFORM,
            "jsonld": bool(node),
            "category": node.get("category"),
        },
    )


async def discover_products(ctx: AdapterContext, limit: int = 200) -> list[ProductRef]:
    base = normalize_url(ctx.site_url)
    if not base:
        return []
    origin = safe_origin(base)
    try:
        urls = await discover_from_sitemap(ctx.http, base, limit * 3, product_aware=True)
        refs = [ProductRef(url=url) for url in urls if is_likely_product_url(url)]
        if refs:
            return dedupe_refs(refs, limit)

        found: list[ProductRef] = []
        for path in LISTING_PATHS:
            if len(found) >= limit:
                break
            page_url = f"{origin}{path}"
            result = await ctx.http.fetch_text(page_url)
            if not result.ok:
                continue
            soup = parse_html(result.text)
            for anchor in soup.find_all("a", href=True):
                url = absolute_url(anchor["href"], page_url)
                if same_origin(url, origin) and is_likely_product_url(url):
                    found.append(ProductRef(url=url))
        return dedupe_refs(found, limit)
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("Generic discovery failed for %s: %s", origin, exc)
        return []


async def fetch_product(ctx: AdapterContext, ref: ProductRef) -> RawProduct | None:
    base = normalize_url(ctx.site_url)
    if not base:
        return None
    url = ref.url if ref.url.startswith("http") else absolute_url(ref.url, base)
    result = await ctx.http.fetch_text(url)
    if not result.ok:
        return None
    return parse_product_html(result.text, ref.url)


adapter = CatalogAdapter(platform=PLATFORM, discover_products=discover_products, fetch_product=fetch_product)
