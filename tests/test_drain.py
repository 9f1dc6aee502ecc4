import time
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
import respx
import sqlalchemy as sa

from app.catalog import constants
from app.catalog.drain import DrainOptions
from app.catalog.errors import CatalogError, ErrorKind
from app.catalog.http import CatalogHttpClient
from app.catalog.llm import PdpLlm
from app.catalog.runs import reset_run
from app.catalog.services import build_services
from app.db.tables import catalog_items, products
from app.utils.dates import utcnow
from app.utils.rate_limit import RateLimiter

FIXTURES = Path(__file__).parent / "fixtures" / "http"

URLS = [f"https://acme.test/products/item-{index}" for index in range(5)]


@pytest.mark.asyncio
async def test_drain_completes_run(services, fake_site, make_run, raw_product):
    fake_site.pages[URLS[0]] = raw_product(URLS[0])
    fake_site.pages[URLS[1]] = raw_product(URLS[1])
    fake_site.pages[URLS[2]] = None
    run = make_run(URLS[:3])

    result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=10000))

    assert result.processed == 3
    summary = services.store.summarize_run(run.id)
    assert summary.status == constants.RUN_COMPLETED
    assert (summary.completed, summary.failed, summary.pending) == (2, 1, 0)
    assert result.as_dict()["lastResult"]["status"] in {"completed", "failed"}


@pytest.mark.asyncio
async def test_systemic_errors_block_run_until_reset(services, fake_site, make_run, brand_id):
    for url in URLS:
        fake_site.pages[url] = CatalogError("upstream 500", ErrorKind.SYSTEMIC)
    run = make_run(URLS)

    result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=10000))

    assert result.processed == 5
    blocked = services.store.get_run(run.id)
    assert blocked.status == constants.RUN_BLOCKED
    assert blocked.consecutive_errors == 5
    assert blocked.block_reason == "consecutive_errors:5"

    calls = len(fake_site.calls)
    again = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=2000))
    assert again.processed == 0
    assert len(fake_site.calls) == calls

    summary = reset_run(services.store, brand_id)
    assert summary.status == constants.RUN_PROCESSING
    assert summary.consecutive_errors == 0
    assert summary.block_reason is None


@pytest.mark.asyncio
async def test_breaker_limit_is_configurable(monkeypatch, services, fake_site, make_run):
    monkeypatch.setenv("CATALOG_EXTRACT_CONSECUTIVE_ERROR_LIMIT", "2")
    for url in URLS:
        fake_site.pages[url] = CatalogError("upstream 500", ErrorKind.SYSTEMIC)
    run = make_run(URLS)

    result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=10000))

    assert result.processed == 2
    assert services.store.get_run(run.id).status == constants.RUN_BLOCKED


@pytest.mark.asyncio
async def test_drain_respects_batch_size(services, fake_site, make_run):
    for url in URLS:
        fake_site.pages[url] = None
    run = make_run(URLS)

    result = await services.drain.drain(DrainOptions(batch_size=2, concurrency=5, max_wall_clock_ms=10000))

    assert result.processed == 2
    assert services.store.summarize_run(run.id).pending == 3


@pytest.mark.asyncio
async def test_drain_bounds_concurrency(services, fake_site, make_run):
    fake_site.delay = 0.05
    for url in URLS:
        fake_site.pages[url] = None
    make_run(URLS)

    result = await services.drain.drain(DrainOptions(concurrency=2, max_wall_clock_ms=10000))

    assert result.processed == 5
    assert fake_site.max_in_flight == 2


@pytest.mark.asyncio
async def test_drain_recovers_stuck_items(engine, services, fake_site, make_run, raw_product):
    fake_site.pages[URLS[0]] = raw_product(URLS[0])
    run = make_run(URLS[:1])
    item_id = services.store.list_items(run.id)[0].id
    with engine.begin() as conn:
        conn.execute(
            catalog_items.update()
            .where(catalog_items.c.id == item_id)
            .values(status=constants.ITEM_PROCESSING, attempts=1, updated_at=utcnow() - timedelta(hours=1))
        )

    result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=10000))

    assert result.processed == 1
    item = services.store.get_item(item_id)
    assert item.status == constants.ITEM_COMPLETED
    assert item.attempts == 2
    assert services.store.get_run(run.id).status == constants.RUN_COMPLETED


@pytest.mark.asyncio
async def test_drain_stops_on_pause(services, fake_site, make_run, brand_id):
    for url in URLS:
        fake_site.pages[url] = None
    run = make_run(URLS)
    services.store.mark_run_status(run.id, constants.RUN_PAUSED)

    result = await services.drain.drain(DrainOptions(max_wall_clock_ms=2000))

    assert result.processed == 0
    assert fake_site.calls == []


@pytest.mark.asyncio
async def test_drain_finalizes_idle_run(services, make_run):
    run = make_run([])

    result = await services.drain.drain(DrainOptions(max_wall_clock_ms=2000))

    assert result.processed == 0
    assert services.store.get_run(run.id).status == constants.RUN_COMPLETED


def test_drain_options_clamp():
    assert DrainOptions(batch_size=-3, concurrency=0, max_wall_clock_ms=10).resolved() == (0, 1, 2000)


@pytest.mark.asyncio
async def test_drain_stops_starting_items_at_deadline(services, fake_site, make_run):
    fake_site.delay = 1.5
    for url in URLS[:4]:
        fake_site.pages[url] = None
    run = make_run(URLS[:4])

    began = time.monotonic()
    result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=2000))

    assert result.processed < 4
    assert len(fake_site.calls) == result.processed
    assert all(started < began + 2.0 for started in fake_site.started)
    assert services.store.summarize_run(run.id).pending == 4 - result.processed


@pytest.mark.asyncio
async def test_robots_denied_url_fails_softly(engine, make_run):
    page = (FIXTURES / "generic" / "vestido-flores.html").read_text()
    async with respx.mock(assert_all_called=False) as router:
        router.get("https://acme.test/robots.txt").mock(
            return_value=httpx.Response(200, text="User-agent: *\nDisallow: /outlet/")
        )
        router.get("https://acme.test/producto/p1").mock(return_value=httpx.Response(200, text=page))
        router.get("https://acme.test/producto/p2").mock(return_value=httpx.Response(200, text=page))
        router.get(host="acme.test").mock(return_value=httpx.Response(404))
        http = CatalogHttpClient(
            session=httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)),
            rate_limiter=RateLimiter(rate=0),
            retry_attempts=1,
        )
        services = build_services(engine, http=http, llm=PdpLlm(None))
        run = make_run(
            ["https://acme.test/outlet/producto/x", "https://acme.test/producto/p1", "https://acme.test/producto/p2"],
            platform="custom",
        )
        result = await services.drain.drain(DrainOptions(concurrency=1, max_wall_clock_ms=10000))
        await services.close()

    assert result.processed == 3
    summary = services.store.summarize_run(run.id)
    assert summary.status == constants.RUN_COMPLETED
    assert (summary.completed, summary.failed) == (2, 1)
    assert summary.block_reason is None
    assert summary.consecutive_errors == 0
    denied = services.store.list_items(run.id)[0]
    assert denied.last_error.startswith("Blocked by robots.txt")


@pytest.mark.asyncio
async def test_drain_shopify_run_end_to_end(engine, services, make_run):
    base = "https://acme.test/products"
    async with respx.mock(assert_all_called=True) as router:
        router.get(f"{base}/camisa-lino.js").mock(
            return_value=httpx.Response(200, text=(FIXTURES / "shopify" / "camisa-lino.js").read_text())
        )
        router.get(f"{base}/pantalon-cargo.js").mock(
            return_value=httpx.Response(200, text=(FIXTURES / "shopify" / "pantalon-cargo.js").read_text())
        )
        router.get(f"{base}/agotado.js").mock(return_value=httpx.Response(404))
        run = make_run([f"{base}/camisa-lino", f"{base}/pantalon-cargo", f"{base}/agotado"], platform="shopify")

        result = await services.drain.drain(DrainOptions(batch_size=3, concurrency=2, max_wall_clock_ms=10000))

    assert result.processed == 3
    summary = services.store.summarize_run(run.id)
    assert summary.status == constants.RUN_COMPLETED
    assert (summary.completed, summary.failed, summary.pending) == (2, 1, 0)
    with engine.connect() as conn:
        names = set(conn.execute(sa.select(products.c.name)).scalars())
    assert names == {"Camisa Lino Manga Larga", "Pantalon Cargo"}
