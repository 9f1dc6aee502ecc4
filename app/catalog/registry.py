"""Platform adapter lookup."""

from __future__ import annotations

from app.catalog.adapters import generic, magento, shopify, vtex, woocommerce
from app.catalog.types import CatalogAdapter

GENERIC_PLATFORMS = {"", "custom", "unknown", "generic", "other"}

_ADAPTERS: dict[str, CatalogAdapter] = {
    shopify.PLATFORM: shopify.adapter,
    woocommerce.PLATFORM: woocommerce.adapter,
    vtex.PLATFORM: vtex.adapter,
    magento.PLATFORM: magento.adapter,
    generic.PLATFORM: generic.adapter,
}


def normalize_platform(platform: str | None) -> str:
    value = (platform or "").strip().lower()
    return generic.PLATFORM if value in GENERIC_PLATFORMS else value


def is_generic_platform(platform: str | None) -> bool:
    return normalize_platform(platform) == generic.PLATFORM


def get_adapter(platform: str | None) -> CatalogAdapter:
    """Return the adapter for ``platform``; anything unregistered gets the generic one."""
    return _ADAPTERS.get(normalize_platform(platform), generic.adapter)


def register_adapter(adapter: CatalogAdapter) -> None:
    _ADAPTERS[normalize_platform(adapter.platform)] = adapter


def unregister_adapter(platform: str) -> None:
    _ADAPTERS.pop(normalize_platform(platform), None)


def list_platforms() -> list[str]:
    return sorted(_ADAPTERS)
