import asyncio
import time
from dataclasses import dataclass, field

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine

from app.catalog import registry
from app.catalog.http import CatalogHttpClient
from app.catalog.llm import PdpLlm
from app.catalog.services import build_services
from app.catalog.store import CatalogStore
from app.catalog.types import CatalogAdapter, ProductRef, RawProduct, RawVariant
from app.db.tables import brands, metadata
from app.utils.dates import utcnow
from app.utils.rate_limit import RateLimiter

FAKE_PLATFORM = "fakeshop"
SITE_URL = "https://acme.test"


def make_raw(url: str, *, price: float = 49.9, stock: int | None = 4, title: str = "Camisa Lino") -> RawProduct:
    handle = url.rstrip("/").rsplit("/", 1)[-1]
    return RawProduct(
        source_url=url,
        external_id=handle,
        title=title,
        description="Camisa de lino para hombre",
        currency="USD",
        images=[f"{SITE_URL}/img/{handle}.jpg"],
        variants=[
            RawVariant(
                id=f"{handle}-m",
                sku=f"{handle.upper()}-M",
                options={"talla": "M", "color": "Azul"},
                price=price,
                currency="USD",
                stock=stock,
            )
        ],
        metadata={"platform": FAKE_PLATFORM, "product_type": "Camisas", "tags": ["Verano"]},
    )


@dataclass
class FakeSite:
    """In-memory storefront behind a registered adapter.

    ``pages`` maps a URL to a RawProduct, ``None`` (not a product) or an
    exception instance to raise.
    """

    pages: dict = field(default_factory=dict)
    discovered: list = field(default_factory=list)
    delay: float = 0.0
    calls: list = field(default_factory=list)
    started: list = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def discover_products(self, ctx, limit):
        return [ProductRef(url=url) for url in self.discovered[:limit]]

    async def fetch_product(self, ctx, ref):
        self.calls.append(ref.url)
        self.started.append(time.monotonic())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.pages.get(ref.url)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def adapter(self) -> CatalogAdapter:
        return CatalogAdapter(
            platform=FAKE_PLATFORM,
            discover_products=self.discover_products,
            fetch_product=self.fetch_product,
        )


@pytest.fixture(autouse=True)
def catalog_env(monkeypatch):
    monkeypatch.delenv("CATALOG_QUEUE_ENABLED", raising=False)
    monkeypatch.delenv("CATALOG_TRANSIENT_COUNTS_TOWARD_BREAKER", raising=False)
    monkeypatch.delenv("CATALOG_EXTRACT_CONSECUTIVE_ERROR_LIMIT", raising=False)
    monkeypatch.delenv("CATALOG_EXTRACT_DISCOVERY_LIMIT", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("CRON_ALLOW_SCHEDULER_HEADER", raising=False)
    monkeypatch.setenv("CATALOG_REFRESH_JITTER_HOURS", "0")
    monkeypatch.setenv("SIGNING_SECRET", "test-secret")


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'catalog.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return CatalogStore(engine, max_attempts=3)


@pytest.fixture()
def brand_id(engine):
    with engine.begin() as conn:
        result = conn.execute(
            brands.insert().values(
                name="Acme",
                slug="acme",
                site_url=SITE_URL,
                ecommerce_platform=FAKE_PLATFORM,
                meta={},
                created_at=utcnow(),
            )
        )
        return int(result.inserted_primary_key[0])


@pytest.fixture()
def fake_site():
    site = FakeSite()
    registry.register_adapter(site.adapter())
    yield site
    registry.unregister_adapter(FAKE_PLATFORM)


@pytest_asyncio.fixture()
async def services(engine, fake_site):
    http = CatalogHttpClient(
        session=httpx.AsyncClient(),
        rate_limiter=RateLimiter(rate=0),
        respect_robots=False,
        retry_attempts=1,
    )
    services = build_services(engine, http=http, llm=PdpLlm(None))
    yield services
    await services.close()


@pytest.fixture()
def raw_product():
    return make_raw


@pytest.fixture()
def make_run(store, brand_id):
    def create(urls, platform=FAKE_PLATFORM):
        return store.create_run_with_items(brand_id, platform, [ProductRef(url=url) for url in urls])

    return create
