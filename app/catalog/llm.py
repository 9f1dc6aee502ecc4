"""LLM-assisted product page classification and extraction.

Used for custom or unknown storefronts when the deterministic adapters come
back empty. The model is asked for JSON only; replies are validated with
pydantic before anything reaches the pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any

from bs4 import BeautifulSoup
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from app.catalog.constants import pdp_llm_enabled
from app.catalog.errors import CatalogError, ErrorKind
from app.catalog.types import RawProduct, RawVariant
from app.catalog.utils import normalize_image_urls, normalize_url, safe_origin

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.environ.get("CATALOG_OPENAI_MODEL", "gpt-4o-mini")
MAX_RETRIES = 3
MAX_HTML_CHARS = max(5000, int(os.environ.get("CATALOG_PDP_LLM_MAX_HTML_CHARS", 40000)))
MAX_TEXT_CHARS = max(2000, int(os.environ.get("CATALOG_PDP_LLM_MAX_TEXT_CHARS", 8000)))
MAX_IMAGES = max(5, int(os.environ.get("CATALOG_PDP_LLM_MAX_IMAGES", 20)))
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

CLASSIFY_PROMPT = """
You classify fashion e-commerce pages.
Reply ONLY with valid JSON using this schema:
{"is_pdp": boolean, "confidence": number 0-1, "reason": "string",
 "product_name": "string|null", "price_hint": "string|null", "currency": "string|null"}
Rules:
- "is_pdp" is true only for a single product detail page.
- Home, listing, collection, blog, press, FAQ or contact pages are is_pdp=false.
- With insufficient evidence answer is_pdp=false with low confidence.
- Use only what is present in the HTML or text.
"""

EXTRACT_PROMPT = """
You extract one product from a fashion product detail page.
Reply ONLY with valid JSON using this schema:
{"source_url": "string", "external_id": "string|null", "title": "string|null",
 "description": "string|null", "vendor": "string|null", "currency": "string|null",
 "images": ["string"], "options": [{"name": "string", "values": ["string"]}],
 "variants": [{"id": "string|null", "sku": "string|null", "options": {"color": "red", "size": "m"},
   "price": "number|null", "compare_at_price": "number|null", "currency": "string|null",
   "available": "boolean|null", "stock": "integer|null", "image": "string|null", "images": ["string"]}],
 "metadata": {}}
Rules:
- Only use image URLs from the provided list.
- Without explicit variants, return a single variant.
- Never invent prices or stock.
- source_url must be the URL received.
"""


class PdpDecision(BaseModel):
    is_pdp: bool
    confidence: float = Field(ge=0, le=1)
    reason: str = ""
    product_name: str | None = None
    price_hint: str | None = None
    currency: str | None = None


class ExtractedOption(BaseModel):
    name: str
    values: list[str] = Field(default_factory=list)


class ExtractedVariant(BaseModel):
    id: str | None = None
    sku: str | None = None
    options: dict[str, str] | None = None
    price: float | None = None
    compare_at_price: float | None = None
    currency: str | None = None
    available: bool | None = None
    stock: int | None = None
    image: str | None = None
    images: list[str] | None = None


class ExtractedProduct(BaseModel):
    source_url: str
    external_id: str | None = None
    title: str | None = None
    description: str | None = None
    vendor: str | None = None
    currency: str | None = None
    images: list[str] = Field(default_factory=list)
    options: list[ExtractedOption] = Field(default_factory=list)
    variants: list[ExtractedVariant] = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_raw(self, url: str) -> RawProduct:
        return RawProduct(
            source_url=url,
            external_id=self.external_id,
            title=self.title,
            description=self.description,
            vendor=self.vendor,
            currency=self.currency,
            images=list(self.images),
            options=[option.model_dump() for option in self.options],
            variants=[
                RawVariant(
                    id=variant.id,
                    sku=variant.sku,
                    options=dict(variant.options or {}),
                    price=variant.price,
                    compare_at_price=variant.compare_at_price,
                    currency=variant.currency,
                    available=variant.available,
                    stock=variant.stock,
                    image=variant.image,
                    images=list(variant.images or []),
                )
                for variant in self.variants
            ],
            metadata={**self.metadata, "platform": "custom", "extracted_by": "llm"},
        )


def extract_html_signals(html: str, base_url: str) -> tuple[str, list[str]]:
    """Return visible page text and candidate image URLs."""
    origin = safe_origin(normalize_url(base_url) or base_url)
    soup = BeautifulSoup(html, "lxml")
    candidates: list[str | None] = []
    for tag in soup.find_all("meta"):
        key = (tag.get("property") or tag.get("name") or "").lower()
        if key in {"og:image", "twitter:image"}:
            candidates.append(tag.get("content"))
    for img in soup.find_all("img"):
        candidates.append(img.get("src") or img.get("data-src"))
        for entry in (img.get("srcset") or "").split(","):
            parts = entry.strip().split(" ")
            candidates.append(parts[0] if parts else None)
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    text = " ".join(soup.get_text(" ").split())[:MAX_TEXT_CHARS]
    return text, normalize_image_urls(candidates, origin)[:MAX_IMAGES]


def parse_json_reply(raw: str) -> dict[str, Any]:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        cleaned = cleaned[4:] if cleaned.lower().startswith("json") else cleaned
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = JSON_OBJECT_RE.search(cleaned)
        if not match:
            raise ValueError("LLM reply is not JSON")
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("LLM reply is not a JSON object")
    return data


class PdpLlm:
    """Thin wrapper around the OpenAI chat API for PDP work."""

    def __init__(self, client: AsyncOpenAI | None = None, *, model: str = DEFAULT_MODEL) -> None:
        self._client = client
        self.model = model

    @classmethod
    def from_env(cls) -> "PdpLlm":
        api_key = os.environ.get("OPENAI_API_KEY")
        return cls(AsyncOpenAI(api_key=api_key) if api_key else None)

    @property
    def enabled(self) -> bool:
        return self._client is not None and pdp_llm_enabled()

    async def classify_pdp(self, url: str, html: str, text: str, images: list[str]) -> PdpDecision:
        data = await self._complete(CLASSIFY_PROMPT, url, html, text, images, stage="classify")
        return PdpDecision.model_validate(data)

    async def extract_product(self, url: str, html: str, text: str, images: list[str]) -> RawProduct:
        data = await self._complete(EXTRACT_PROMPT, url, html, text, images, stage="extract")
        return ExtractedProduct.model_validate(data).to_raw(url)

    async def _complete(
        self,
        system_prompt: str,
        url: str,
        html: str,
        text: str,
        images: list[str],
        *,
        stage: str,
    ) -> dict[str, Any]:
        if self._client is None:
            raise CatalogError("OpenAI API key not configured", ErrorKind.SYSTEMIC)
        payload = json.dumps(
            {"url": url, "html": html[:MAX_HTML_CHARS], "text": text[:MAX_TEXT_CHARS], "images": images},
            ensure_ascii=False,
        )
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    temperature=0,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": payload},
                    ],
                )
                content = response.choices[0].message.content or ""
                if not content:
                    raise ValueError("Empty LLM reply")
                data = parse_json_reply(content)
                if stage == "classify":
                    PdpDecision.model_validate(data)
                else:
                    ExtractedProduct.model_validate(data)
                return data
            except (OpenAIError, ValueError, ValidationError) as exc:
                last_error = exc
                logger.warning("LLM %s attempt %s failed for %s: %s", stage, attempt + 1, url, exc)
                await asyncio.sleep((2 ** attempt) * 0.2)
        raise CatalogError(f"LLM {stage} failed after {MAX_RETRIES} attempts: {last_error}", ErrorKind.SYSTEMIC)
