"""Candidate product URL discovery for a brand."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.catalog import constants
from app.catalog.errors import RobotsDisallowed
from app.catalog.http import CatalogHttpClient
from app.catalog.platform_detect import PlatformGuess, infer_platform
from app.catalog.registry import get_adapter, is_generic_platform
from app.catalog.sitemap import discover_from_sitemap
from app.catalog.types import AdapterContext, Brand, ProductRef
from app.catalog.utils import dedupe_refs, is_likely_product_url, normalize_url, safe_origin, same_origin

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DiscoveryResult:
    refs: list[ProductRef]
    platform: str | None
    adapter_platform: str
    inferred: PlatformGuess | None = None
    source: str = "none"
    sitemap_count: int = 0
    adapter_count: int = 0


def discovery_limit(limit: int) -> int:
    limit = max(1, limit)
    base = constants.discovery_limit_override() or limit * 5
    return min(max(limit, base), constants.DISCOVERY_HARD_LIMIT)


async def _sitemap_refs(http: CatalogHttpClient, site_url: str, limit: int, *, product_only: bool) -> list[ProductRef]:
    base = normalize_url(site_url)
    if not base or limit <= 0:
        return []
    origin = safe_origin(base)
    try:
        urls = await discover_from_sitemap(http, base, limit, product_aware=product_only)
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("Sitemap discovery failed for %s: %s", base, exc)
        return []
    return [
        ProductRef(url=url)
        for url in urls
        if same_origin(url, origin) and (not product_only or is_likely_product_url(url))
    ]


async def discover_catalog_refs(http: CatalogHttpClient, brand: Brand, limit: int) -> DiscoveryResult:
    """Find candidate product URLs for ``brand``.

    Strategies run in order, each only when the previous one found nothing:
    product-filtered sitemap scan, the platform adapter's own discovery and,
    for custom or unknown platforms, an unfiltered same-origin sitemap scan.
    Unknown platforms are inferred from the home page first. Failures
    degrade to the next strategy; this function never raises.
    """
    platform = brand.ecommerce_platform
    inferred: PlatformGuess | None = None
    if not platform or platform.strip().lower() == "unknown":
        inferred = await infer_platform(http, brand.site_url)
        if inferred:
            platform = inferred.platform

    adapter = get_adapter(platform)
    max_refs = discovery_limit(limit)
    sitemap_cap = constants.sitemap_limit()
    sitemap_cap = max(max_refs, sitemap_cap) if sitemap_cap > 0 else 0

    result = DiscoveryResult(refs=[], platform=platform, adapter_platform=adapter.platform, inferred=inferred)

    sitemap_refs = await _sitemap_refs(http, brand.site_url or "", sitemap_cap, product_only=True)
    result.sitemap_count = len(sitemap_refs)
    if sitemap_refs:
        result.refs = dedupe_refs(sitemap_refs, max_refs)
        result.source = "sitemap"
        return result

    ctx = AdapterContext(
        brand=Brand(
            id=brand.id,
            name=brand.name,
            slug=brand.slug,
            site_url=brand.site_url,
            ecommerce_platform=platform,
            meta=brand.meta,
        ),
        http=http,
    )
    try:
        adapter_refs = await adapter.discover_products(ctx, max_refs)
    except Exception as exc:  # pragma: no cover - adapter bug
        logger.warning("Adapter %s discovery failed for %s: %s", adapter.platform, brand.slug, exc)
        adapter_refs = []
    result.adapter_count = len(adapter_refs)
    if adapter_refs:
        result.refs = dedupe_refs(adapter_refs, max_refs)
        result.source = "adapter"
        return result

    if is_generic_platform(adapter.platform) or is_generic_platform(platform):
        broad = await _sitemap_refs(http, brand.site_url or "", max_refs, product_only=False)
        if broad:
            result.refs = dedupe_refs(broad, max_refs)
            result.source = "sitemap_broad"
            return result

    logger.warning("No product URLs discovered for %s", brand.slug)
    return result
