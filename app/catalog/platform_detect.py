"""Guess a storefront's e-commerce platform from its home page."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from app.catalog.errors import RobotsDisallowed
from app.catalog.http import CatalogHttpClient
from app.catalog.utils import normalize_url

logger = logging.getLogger(__name__)

MIN_SCORE = 0.7

# (platform, evidence label, needles, weight)
SCRIPT_HOST_SIGNALS = (
    ("shopify", "script_host:shopify", ("cdn.shopify.com", "shopify"), 0.9),
    ("vtex", "script_host:vtex", ("vtex", "vtexassets"), 0.9),
    ("wix", "script_host:wix", ("wix", "wixsite"), 0.9),
    ("tiendanube", "script_host:tiendanube", ("tiendanube", "nuvemshop"), 0.9),
)
HTML_SIGNALS = (
    ("shopify", "html_marker:shopify", ("shopify", "myshopify"), 0.5),
    ("woocommerce", "html_marker:woocommerce", ("woocommerce", "wp-content", "wp-json"), 0.6),
    ("vtex", "html_marker:vtex", ("vtex",), 0.6),
    ("wix", "html_marker:wix", ("wix.com", "wixsite"), 0.6),
    ("tiendanube", "html_marker:tiendanube", ("tiendanube", "nuvemshop"), 0.6),
    ("magento", "html_marker:magento", ("magento", "mage/cookies", "mage/"), 0.6),
)
GENERATOR_SIGNALS = (
    ("woocommerce", "meta_generator:wp", ("woocommerce", "wordpress"), 0.5),
    ("wix", "meta_generator:wix", ("wix",), 0.8),
    ("magento", "meta_generator:magento", ("magento",), 0.7),
)
HEADER_SIGNALS = (
    ("shopify", "header:shopify", ("x-shopid", "x-shopify-shop-id"), 0.8),
)


@dataclass(slots=True)
class PlatformGuess:
    platform: str
    confidence: float
    evidence: list[str] = field(default_factory=list)


def extract_script_hosts(soup: BeautifulSoup, base_url: str) -> list[str]:
    hosts: set[str] = set()
    for tag in soup.find_all("script", src=True):
        src = tag["src"].strip()
        if not src:
            continue
        host = urlparse(urljoin(base_url, src)).hostname
        if host:
            hosts.add(host.lower())
    return sorted(hosts)


def extract_generator(soup: BeautifulSoup) -> str | None:
    tag = soup.find("meta", attrs={"name": lambda value: value and value.lower() == "generator"})
    content = tag.get("content") if tag else None
    return content.lower() if content else None


def score_signals(
    html: str,
    hosts: list[str],
    headers: Mapping[str, str],
    generator: str | None,
) -> PlatformGuess | None:
    """Weigh the collected markers and return the best guess above the threshold."""
    lowered = html.lower()
    header_names = {key.lower() for key in headers}
    scores: dict[str, float] = defaultdict(float)
    evidence: dict[str, list[str]] = defaultdict(list)

    def add(platform: str, label: str, weight: float) -> None:
        scores[platform] += weight
        evidence[platform].append(label)

    for platform, label, needles, weight in SCRIPT_HOST_SIGNALS:
        if any(needle in host for host in hosts for needle in needles):
            add(platform, label, weight)
    for platform, label, needles, weight in HTML_SIGNALS:
        if any(needle in lowered for needle in needles):
            add(platform, label, weight)
    if generator:
        for platform, label, needles, weight in GENERATOR_SIGNALS:
            if any(needle in generator for needle in needles):
                add(platform, label, weight)
    for platform, label, names, weight in HEADER_SIGNALS:
        if any(name in header_names for name in names):
            add(platform, label, weight)

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    if not ranked or ranked[0][1] <= MIN_SCORE:
        return None
    top_platform, top_score = ranked[0]
    gap = top_score - (ranked[1][1] if len(ranked) > 1 else 0.0)
    confidence = min(0.98, max(0.4, 0.55 + gap * 0.25 + top_score * 0.12))
    return PlatformGuess(platform=top_platform, confidence=round(confidence, 3), evidence=evidence[top_platform])


async def infer_platform(http: CatalogHttpClient, site_url: str | None) -> PlatformGuess | None:
    """Fetch the home page and guess its platform; ``None`` when unsure or unreachable."""
    base = normalize_url(site_url)
    if not base:
        return None
    try:
        result = await http.fetch_text(base)
    except (httpx.HTTPError, RobotsDisallowed) as exc:
        logger.warning("Platform detection failed for %s: %s", base, exc)
        return None
    if not result.ok:
        return None
    soup = BeautifulSoup(result.text, "lxml")
    guess = score_signals(
        result.text,
        extract_script_hosts(soup, result.final_url or base),
        result.headers,
        extract_generator(soup),
    )
    if guess:
        logger.info("Detected platform %s for %s (%.2f)", guess.platform, base, guess.confidence)
    return guess
