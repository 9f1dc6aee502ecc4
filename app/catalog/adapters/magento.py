"""Magento 2 adapter backed by the storefront GraphQL endpoint."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import unquote, urlparse

import httpx

from app.catalog.errors import RobotsDisallowed
from app.catalog.http import FetchResult
from app.catalog.types import AdapterContext, CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.catalog.utils import dedupe_refs, normalize_url, parse_price_value, safe_origin, to_str_or_none

logger = logging.getLogger(__name__)

PLATFORM = "magento"
GRAPHQL_PATH = "/graphql"
PAGE_SIZE = 20
DEFAULT_CURRENCY = "COP"

PRICE_FIELDS = "price_range { minimum_price { regular_price { value currency } final_price { value currency } } }"

PRODUCT_FIELDS = f"""
  id
  sku
  name
  url_key
  url_suffix
  url_rewrites {{ url }}
  description {{ html }}
  media_gallery {{ url label }}
  {PRICE_FIELDS}
  ... on ConfigurableProduct {{
    configurable_options {{ attribute_code label values {{ value_index label }} }}
    variants {{
      attributes {{ code label value_index }}
      product {{ id sku name {PRICE_FIELDS} media_gallery {{ url label }} }}
    }}
  }}
"""

LIST_QUERY = f"""query Products($pageSize: Int!, $currentPage: Int!) {{
  products(pageSize: $pageSize, currentPage: $currentPage) {{ items {{ {PRODUCT_FIELDS} }} }}
}}"""

BY_URL_KEY_QUERY = f"""query ProductByUrlKey($urlKey: String!) {{
  products(filter: {{ url_key: {{ eq: $urlKey }} }}) {{ items {{ {PRODUCT_FIELDS} }} }}
}}"""


def extract_url_key(url: str) -> str | None:
    """``/vestido-flores.html`` -> ``vestido-flores``."""
    parts = [part for part in urlparse(url).path.split("/") if part]
    if not parts:
        return None
    last = parts[-1]
    for suffix in (".html", ".htm"):
        if last.lower().endswith(suffix):
            last = last[: -len(suffix)]
    return unquote(last) or None


def product_url(origin: str, item: dict[str, Any]) -> str:
    rewrites = item.get("url_rewrites") or []
    if rewrites and isinstance(rewrites[0], dict) and rewrites[0].get("url"):
        return f"{origin}/{rewrites[0]['url'].lstrip('/')}"
    if not item.get("url_key"):
        return origin
    return f"{origin}/{item['url_key']}{item.get('url_suffix') or ''}"


def _items(result: FetchResult) -> list[dict[str, Any]]:
    data = result.json() if result.status < 400 else None
    items = (((data or {}).get("data") or {}).get("products") or {}).get("items") if isinstance(data, dict) else None
    return [item for item in items or [] if isinstance(item, dict)]


def _prices(price_range: dict[str, Any] | None) -> tuple[float | None, float | None, str | None]:
    minimum = (price_range or {}).get("minimum_price") or {}
    regular = minimum.get("regular_price") or {}
    final = minimum.get("final_price") or {}
    return (
        parse_price_value(final.get("value")),
        parse_price_value(regular.get("value")),
        final.get("currency") or regular.get("currency"),
    )


def _variant_options(attributes: list[dict[str, Any]], option_names: dict[str, str]) -> dict[str, str]:
    # attribute labels are the chosen value ("M"), codes are the attribute ("size")
    options: dict[str, str] = {}
    for attribute in attributes:
        code = attribute.get("code")
        value = attribute.get("label") or to_str_or_none(attribute.get("value_index"))
        if not code or not value:
            continue
        options[code] = value
        if option_names.get(code):
            options[option_names[code].strip().lower()] = value
    return options


def _gallery(node: dict[str, Any] | None) -> list[str]:
    return [media["url"] for media in (node or {}).get("media_gallery") or [] if media and media.get("url")]


async def discover_products(ctx: AdapterContext, limit: int = 200) -> list[ProductRef]:
    base = normalize_url(ctx.site_url)
    if not base:
        return []
    origin = safe_origin(base)
    refs: list[ProductRef] = []
    page = 1
    try:
        while len(refs) < limit:
            result = await ctx.http.post_json(
                f"{origin}{GRAPHQL_PATH}",
                {"query": LIST_QUERY, "variables": {"pageSize": PAGE_SIZE, "currentPage": page}},
            )
            items = _items(result)
            if not items:
                break
            refs.extend(
                ProductRef(
                    url=product_url(origin, item),
                    external_id=to_str_or_none(item.get("id")),
                    handle=to_str_or_none(item.get("url_key")),
                )
                for item in items
            )
            if len(items) < PAGE_SIZE:
                break
            page += 1
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("Magento discovery failed for %s: %s", origin, exc)
    return dedupe_refs(refs, limit)


async def fetch_product(ctx: AdapterContext, ref: ProductRef) -> RawProduct | None:
    base = normalize_url(ctx.site_url)
    url_key = ref.handle or extract_url_key(ref.url)
    if not base or not url_key:
        return None
    result = await ctx.http.post_json(
        f"{safe_origin(base)}{GRAPHQL_PATH}",
        {"query": BY_URL_KEY_QUERY, "variables": {"urlKey": url_key}},
    )
    items = _items(result)
    if not items:
        return None
    item = items[0]
    price, compare_at, currency = _prices(item.get("price_range"))
    currency = currency or DEFAULT_CURRENCY
    option_names = {
        option.get("attribute_code"): option.get("label")
        for option in item.get("configurable_options") or []
        if isinstance(option, dict)
    }

    variants: list[RawVariant] = []
    for child in item.get("variants") or []:
        if not isinstance(child, dict):
            continue
        product = child.get("product") or {}
        child_price, child_compare_at, child_currency = _prices(product.get("price_range"))
        images = _gallery(product)
        variants.append(
            RawVariant(
                id=to_str_or_none(product.get("id")),
                sku=to_str_or_none(product.get("sku")),
                options=_variant_options(child.get("attributes") or [], option_names),
                price=child_price if child_price is not None else price,
                compare_at_price=child_compare_at if child_compare_at is not None else compare_at,
                currency=child_currency or currency,
                image=images[0] if images else None,
                images=images,
            )
        )
    if not variants:
        variants.append(
            RawVariant(
                id=to_str_or_none(item.get("id")),
                sku=to_str_or_none(item.get("sku")),
                price=price,
                compare_at_price=compare_at,
                currency=currency,
            )
        )

    return RawProduct(
        source_url=ref.url,
        external_id=to_str_or_none(item.get("id")) or ref.external_id,
        title=item.get("name"),
        description=(item.get("description") or {}).get("html"),
        currency=currency,
        images=_gallery(item),
        options=[
            {
                "name": option.get("label") or option.get("attribute_code") or "",
                "values": [
                    value.get("label") or str(value.get("value_index"))
                    for value in option.get("values") or []
                    if isinstance(value, dict)
                ],
            }
            for option in item.get("configurable_options") or []
            if isinstance(option, dict)
        ],
        variants=variants,
        metadata={"platform": PLATFORM, "handle": url_key, "raw": {"id": item.get("id"), "sku": item.get("sku")}},
    )


adapter = CatalogAdapter(platform=PLATFORM, discover_products=discover_products, fetch_product=fetch_product)
