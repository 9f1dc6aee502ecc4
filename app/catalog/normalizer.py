"""Map raw adapter output onto the canonical product schema."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable

from app.catalog.constants import DEFAULT_CURRENCY
from app.catalog.errors import ProductNotFound
from app.catalog.types import CanonicalProduct, CanonicalVariant, RawProduct, RawVariant
from app.catalog.utils import (
    guess_currency,
    normalize_image_urls,
    normalize_size,
    pick_option,
    sane_price,
    to_str_or_none,
)

COLOR_KEYS = ("color", "colour", "tono")
SIZE_KEYS = ("talla", "size", "tamano", "tamaño")
FIT_KEYS = ("fit", "horma", "corte")
MATERIAL_KEYS = ("material", "tela", "fabric")
MAX_TAGS = 20

GENDER_PATTERNS = (
    ("unisex", re.compile(r"\bunisex\b", re.IGNORECASE)),
    ("female", re.compile(r"\b(mujer|mujeres|dama|damas|women|womens|woman|femenino)\b", re.IGNORECASE)),
    ("male", re.compile(r"\b(hombre|hombres|caballero|caballeros|men|mens|man|masculino)\b", re.IGNORECASE)),
    ("kids", re.compile(r"\b(niño|niña|niños|niñas|kids|infantil|bebe|bebé)\b", re.IGNORECASE)),
)
PATTERN_WORDS = ("rayas", "stripes", "floral", "cuadros", "plaid", "animal print", "estampado", "print", "liso", "solid")
MATERIAL_WORDS = ("algodón", "algodon", "cotton", "lino", "linen", "seda", "silk", "cuero", "leather", "denim", "lana", "wool", "poliester", "polyester")


def variant_sku(variant: RawVariant, fallback: str) -> str:
    return to_str_or_none(variant.sku) or to_str_or_none(variant.id) or fallback


def stock_status(variant: RawVariant) -> str | None:
    if variant.available is False:
        return "out_of_stock"
    if variant.available is True:
        return "in_stock"
    if isinstance(variant.stock, int):
        return "in_stock" if variant.stock > 0 else "out_of_stock"
    return None


def _lower_unique(values: Iterable[Any], limit: int = MAX_TAGS) -> list[str]:
    tags: list[str] = []
    for value in values:
        text = to_str_or_none(value)
        if not text:
            continue
        tag = text.lower()
        if tag not in tags:
            tags.append(tag)
    return tags[:limit]


def _keywords(haystack: str, words: Iterable[str]) -> list[str]:
    lowered = haystack.lower()
    return [word for word in words if word in lowered]


def infer_gender(*texts: str | None) -> str | None:
    haystack = " ".join(text for text in texts if text)
    for gender, pattern in GENDER_PATTERNS:
        if pattern.search(haystack):
            return gender
    return None


def _fallback_key(raw: RawProduct) -> str:
    if raw.external_id:
        return raw.external_id
    return hashlib.sha1(raw.source_url.encode("utf-8")).hexdigest()[:12]


def normalize_product(raw: RawProduct, platform: str) -> CanonicalProduct:
    """Build the canonical product; raises :class:`ProductNotFound` without images."""
    product_images = normalize_image_urls(raw.images, raw.source_url)
    variant_images = [
        normalize_image_urls([variant.image, *variant.images], raw.source_url) for variant in raw.variants
    ]
    if not product_images:
        product_images = next((images for images in variant_images if images), [])
    if not product_images:
        raise ProductNotFound(f"No images available for {raw.source_url}")

    metadata = dict(raw.metadata or {})
    tags = metadata.get("tags") if isinstance(metadata.get("tags"), list) else []
    category = to_str_or_none(metadata.get("product_type")) or to_str_or_none(metadata.get("category"))
    name = to_str_or_none(raw.title) or "Untitled"
    text_blob = " ".join(filter(None, [name, raw.description or "", category or "", " ".join(map(str, tags))]))

    fallback = _fallback_key(raw)
    raw_variants = raw.variants or [RawVariant(sku=raw.external_id, currency=raw.currency)]
    variants: list[CanonicalVariant] = []
    seen: set[str] = set()
    for index, variant in enumerate(raw_variants):
        sku = variant_sku(variant, f"{fallback}-{index}")
        if sku in seen:
            sku = f"{sku}-{index}"
        seen.add(sku)
        price = sane_price(variant.price)
        compare_at = sane_price(variant.compare_at_price)
        images = variant_images[index] if index < len(variant_images) and variant_images[index] else product_images
        variants.append(
            CanonicalVariant(
                sku=sku,
                color=pick_option(variant.options, COLOR_KEYS),
                size=normalize_size(pick_option(variant.options, SIZE_KEYS)),
                fit=pick_option(variant.options, FIT_KEYS),
                material=pick_option(variant.options, MATERIAL_KEYS),
                price=price,
                compare_at_price=compare_at if compare_at and price and compare_at > price else None,
                currency=guess_currency(price, variant.currency or raw.currency) or DEFAULT_CURRENCY,
                stock=variant.stock if isinstance(variant.stock, int) else None,
                stock_status=stock_status(variant),
                images=images,
                metadata={
                    "source_variant_id": variant.id,
                    "options": dict(variant.options) or None,
                },
            )
        )

    first_price = next((variant.price for variant in variants if variant.price is not None), None)
    materials = [variant.material for variant in variants if variant.material]
    return CanonicalProduct(
        name=name,
        source_url=raw.source_url,
        external_id=raw.external_id,
        description=to_str_or_none(raw.description),
        category=category.lower() if category else None,
        subcategory=to_str_or_none(metadata.get("subcategory")),
        style_tags=_lower_unique(tags),
        material_tags=_lower_unique([*materials, *_keywords(text_blob, MATERIAL_WORDS)]),
        pattern_tags=_lower_unique(_keywords(text_blob, PATTERN_WORDS)),
        occasion_tags=_lower_unique(metadata.get("occasions") or []),
        gender=infer_gender(text_blob),
        season=to_str_or_none(metadata.get("season")),
        currency=guess_currency(first_price, raw.currency or (variants[0].currency if variants else None)),
        image_cover_url=product_images[0],
        variants=variants,
        metadata={
            **metadata,
            "platform": metadata.get("platform") or platform,
            "vendor": raw.vendor,
            "source_images": product_images,
        },
    )
