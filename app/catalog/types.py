"""Catalog data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from app.catalog.http import CatalogHttpClient


@dataclass(slots=True)
class Brand:
    id: int
    name: str
    slug: str
    site_url: str | None
    ecommerce_platform: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProductRef:
    url: str
    external_id: str | None = None
    handle: str | None = None


@dataclass(slots=True)
class RawVariant:
    id: str | None = None
    sku: str | None = None
    options: dict[str, str] = field(default_factory=dict)
    price: float | None = None
    compare_at_price: float | None = None
    currency: str | None = None
    available: bool | None = None
    stock: int | None = None
    image: str | None = None
    images: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RawProduct:
    source_url: str
    external_id: str | None = None
    title: str | None = None
    description: str | None = None
    vendor: str | None = None
    currency: str | None = None
    images: list[str] = field(default_factory=list)
    options: list[dict[str, Any]] = field(default_factory=list)
    variants: list[RawVariant] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CanonicalVariant:
    sku: str
    color: str | None = None
    size: str | None = None
    fit: str | None = None
    material: str | None = None
    price: float | None = None
    compare_at_price: float | None = None
    currency: str | None = None
    stock: int | None = None
    stock_status: str | None = None
    images: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CanonicalProduct:
    name: str
    source_url: str
    external_id: str | None = None
    description: str | None = None
    category: str | None = None
    subcategory: str | None = None
    style_tags: list[str] = field(default_factory=list)
    material_tags: list[str] = field(default_factory=list)
    pattern_tags: list[str] = field(default_factory=list)
    occasion_tags: list[str] = field(default_factory=list)
    gender: str | None = None
    season: str | None = None
    currency: str | None = None
    image_cover_url: str | None = None
    variants: list[CanonicalVariant] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AdapterContext:
    brand: Brand
    http: "CatalogHttpClient"

    @property
    def site_url(self) -> str:
        return self.brand.site_url or ""

    @property
    def platform(self) -> str | None:
        return self.brand.ecommerce_platform


DiscoverFn = Callable[[AdapterContext, int], Awaitable[list[ProductRef]]]
FetchFn = Callable[[AdapterContext, ProductRef], Awaitable["RawProduct | None"]]


@dataclass(slots=True, frozen=True)
class CatalogAdapter:
    """Platform strategy: one discovery callable and one fetch callable."""

    platform: str
    discover_products: DiscoverFn
    fetch_product: FetchFn
