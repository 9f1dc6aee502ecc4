"""Sitemap crawling for candidate URL discovery."""

from __future__ import annotations

import logging

from app.catalog.http import CatalogHttpClient
from app.catalog.utils import extract_sitemap_urls, extract_sitemaps_from_robots, normalize_url, safe_origin

logger = logging.getLogger(__name__)

MAX_ROOT_SITEMAPS = 3
MAX_CHILD_SITEMAPS = 5


async def discover_from_sitemap(
    http: CatalogHttpClient,
    site_url: str,
    limit: int = 200,
    *,
    product_aware: bool = True,
) -> list[str]:
    """Collect up to ``limit`` page URLs from the site's sitemaps.

    Looks at robots.txt ``Sitemap:`` directives and ``/sitemap.xml`` and
    follows one level of sitemap indexes. With ``product_aware`` child
    sitemaps mentioning products are read first.
    """
    base = normalize_url(site_url)
    if not base or limit <= 0:
        return []
    origin = safe_origin(base)
    robots = await http.robots_txt(origin)
    candidates = extract_sitemaps_from_robots(robots)
    fallback = f"{origin}/sitemap.xml"
    if fallback not in candidates:
        candidates.append(fallback)

    for sitemap_url in candidates[:MAX_ROOT_SITEMAPS]:
        result = await http.fetch_text(sitemap_url)
        if not result.ok:
            continue
        if "<sitemapindex" not in result.text:
            return extract_sitemap_urls(result.text, limit)
        children = extract_sitemap_urls(result.text, 50)
        if product_aware:
            children.sort(key=lambda url: 0 if "product" in url.lower() else 1)
        urls: list[str] = []
        for child in children[:MAX_CHILD_SITEMAPS]:
            child_result = await http.fetch_text(child)
            if not child_result.ok:
                continue
            urls.extend(extract_sitemap_urls(child_result.text, limit - len(urls)))
            if len(urls) >= limit:
                break
        if urls:
            return urls
    logger.info("No sitemap URLs found for %s", origin)
    return []
