"""URL, price and sitemap helpers shared by adapters and discovery."""

from __future__ import annotations

import html
import re
from typing import Any, Iterable
from urllib.parse import urljoin, urlparse, urlunparse

from app.catalog.constants import PRICE_MAX, PRICE_MIN
from app.catalog.types import ProductRef

LOC_RE = re.compile(r"<loc>\s*([^<\s]+)\s*</loc>", re.IGNORECASE)
PRODUCT_PATH_RE = re.compile(
    r"/(products?|p|producto|productos|item|items|shop|tienda)/[^/?#]+",
    re.IGNORECASE,
)
PRODUCT_SUFFIX_RE = re.compile(r"(/p$|/p/|-p-\d+|\.html$)", re.IGNORECASE)
NON_PRODUCT_RE = re.compile(
    r"/(collections?|categor(y|ies|ia|ias)|blogs?|pages?|account|cart|checkout|search|tag|tags|policies)(/|$)",
    re.IGNORECASE,
)
ASSET_RE = re.compile(r"\.(jpe?g|png|gif|webp|svg|pdf|xml|css|js)(\?|$)", re.IGNORECASE)
PRICE_CHARS_RE = re.compile(r"[^\d.,]")
SIZE_ALIASES = {"u", "unica", "única", "one size", "talla unica", "talla única", "os"}


def normalize_url(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if not re.match(r"^https?://", trimmed, re.IGNORECASE):
        trimmed = f"https://{trimmed.lstrip('/')}"
    return trimmed


def safe_origin(value: str) -> str:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        return value.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def same_origin(url: str, origin: str) -> bool:
    return safe_origin(url) == origin.lower().rstrip("/")


def absolute_url(href: str, base: str) -> str:
    return urljoin(base, href.strip())


def strip_fragment(url: str) -> str:
    parsed = urlparse(url)
    return urlunparse(parsed._replace(fragment=""))


def is_likely_product_url(url: str) -> bool:
    path = urlparse(url).path
    if not path or path == "/":
        return False
    if ASSET_RE.search(path):
        return False
    if NON_PRODUCT_RE.search(path) and "/products/" not in path:
        return False
    return bool(PRODUCT_PATH_RE.search(path) or PRODUCT_SUFFIX_RE.search(path))


def dedupe_refs(refs: Iterable[ProductRef], limit: int | None = None) -> list[ProductRef]:
    seen: set[str] = set()
    unique: list[ProductRef] = []
    for ref in refs:
        key = strip_fragment(ref.url)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(ref)
        if limit is not None and len(unique) >= limit:
            break
    return unique


def extract_sitemap_urls(xml: str, limit: int = 200) -> list[str]:
    urls: list[str] = []
    for match in LOC_RE.finditer(xml):
        urls.append(html.unescape(match.group(1)))
        if len(urls) >= limit:
            break
    return urls


def extract_sitemaps_from_robots(robots_text: str) -> list[str]:
    urls: list[str] = []
    for line in robots_text.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("sitemap:"):
            value = stripped.split(":", 1)[1].strip()
            if value and value not in urls:
                urls.append(value)
    return urls


def parse_price_value(value: Any) -> float | None:
    """Parse prices such as ``49.90``, ``"160.000"`` or ``"$ 1,299.90"``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = PRICE_CHARS_RE.sub("", str(value))
    if not text or not any(ch.isdigit() for ch in text):
        return None
    if "." in text and "," in text:
        decimal_sep = "." if text.rfind(".") > text.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        text = text.replace(thousands_sep, "").replace(decimal_sep, ".")
    else:
        for sep in (".", ","):
            if sep not in text:
                continue
            head, _, tail = text.rpartition(sep)
            if text.count(sep) > 1 or len(tail) == 3:
                text = text.replace(sep, "")
            else:
                text = f"{head.replace(sep, '')}.{tail}"
    try:
        return float(text)
    except ValueError:
        return None


def sane_price(value: Any) -> float | None:
    price = parse_price_value(value)
    if price is None or price < PRICE_MIN or price > PRICE_MAX:
        return None
    return round(price, 2)


def guess_currency(price: float | None, currency: str | None) -> str | None:
    if currency and currency.strip():
        return currency.strip().upper()
    if price is None:
        return None
    if price <= 999:
        return "USD"
    if price >= 10000:
        return "COP"
    return None


def normalize_image_urls(values: Iterable[str | None], base: str | None = None) -> list[str]:
    images: list[str] = []
    for value in values:
        if not value or not isinstance(value, str):
            continue
        url = value.strip()
        if url.startswith("//"):
            url = f"https:{url}"
        elif base and not url.startswith("http"):
            url = absolute_url(url, base)
        if not url.startswith("http"):
            continue
        if url not in images:
            images.append(url)
    return images


def pick_option(options: dict[str, str] | None, keys: Iterable[str]) -> str | None:
    if not options:
        return None
    for key in keys:
        for option_key, value in options.items():
            if key in option_key.lower() and value:
                return value
    return None


def normalize_size(value: str | None) -> str | None:
    if not value:
        return None
    if value.strip().lower() in SIZE_ALIASES:
        return "talla unica"
    return value.strip()


def to_str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float, bool)):
        return str(value)
    return None
