from datetime import datetime, timedelta

import httpx
import pytest
import respx
import sqlalchemy as sa

from app.catalog import constants
from app.catalog.refresh import handle_run_completed, is_brand_due_for_refresh, run_refresh_batch
from app.db.tables import brands
from app.utils.dates import utcnow


def brand_row(engine, brand_id):
    with engine.connect() as conn:
        return conn.execute(sa.select(brands).where(brands.c.id == brand_id)).mappings().one()


def add_brand(engine, slug, **values):
    with engine.begin() as conn:
        result = conn.execute(
            brands.insert().values(name=slug.title(), slug=slug, meta={}, created_at=utcnow(), **values)
        )
        return int(result.inserted_primary_key[0])


def test_is_brand_due_for_refresh():
    now = datetime(2026, 3, 1, 12, 0)
    assert is_brand_due_for_refresh({"site_url": "https://acme.test", "refresh_next_due_at": None}, now)
    assert is_brand_due_for_refresh({"site_url": "https://acme.test", "refresh_next_due_at": now}, now)
    assert not is_brand_due_for_refresh(
        {"site_url": "https://acme.test", "refresh_next_due_at": now + timedelta(hours=1)}, now
    )
    assert not is_brand_due_for_refresh({"site_url": None, "refresh_next_due_at": None}, now)


@pytest.mark.asyncio
async def test_refresh_batch_starts_due_brands(monkeypatch, services, fake_site, engine, brand_id):
    monkeypatch.setenv("CATALOG_REFRESH_INTERVAL_DAYS", "7")
    fake_site.discovered = ["https://acme.test/products/camisa-lino"]
    later = add_brand(
        engine,
        "later",
        site_url="https://later.test",
        ecommerce_platform="fakeshop",
        refresh_next_due_at=utcnow() + timedelta(days=2),
    )
    empty = add_brand(engine, "vacia", site_url="https://vacia.test", ecommerce_platform="custom")

    with respx.mock(assert_all_called=False) as router:
        router.get(host="acme.test").mock(return_value=httpx.Response(404))
        router.get(host="vacia.test").mock(return_value=httpx.Response(404))
        result = await run_refresh_batch(services)

    assert sorted(result["started"]) == sorted([brand_id, empty])
    assert later not in result["started"] + result["skipped"]
    assert services.store.find_active_run(brand_id).status == constants.RUN_PROCESSING

    # a brand whose discovery found nothing is rescheduled right away
    assert brand_row(engine, empty)["refresh_next_due_at"] > utcnow() + timedelta(days=6)
    assert brand_row(engine, brand_id)["refresh_next_due_at"] is None


@pytest.mark.asyncio
async def test_refresh_batch_skips_brands_with_live_runs(services, make_run, brand_id):
    make_run(["https://acme.test/products/camisa-lino"])

    result = await run_refresh_batch(services)

    assert result == {"started": [], "skipped": [brand_id]}


def test_handle_run_completed_finishes_clean_runs(monkeypatch, store, engine, make_run, brand_id):
    monkeypatch.setenv("CATALOG_REFRESH_INTERVAL_DAYS", "7")
    run = make_run(["https://acme.test/products/camisa-lino"])
    item = store.list_items(run.id)[0]
    store.claim_item(item.id, stuck_before=utcnow())
    store.complete_item(item.id)
    store.mark_run_status(run.id, constants.RUN_COMPLETED)

    handle_run_completed(store, run.id)

    row = brand_row(engine, brand_id)
    assert row["catalog_finished_reason"] == "auto_complete"
    assert row["refresh_last_completed_at"] is not None
    assert row["refresh_next_due_at"] - row["refresh_last_completed_at"] == timedelta(days=7)


def test_handle_run_completed_with_failures_keeps_brand_open(store, engine, make_run, brand_id):
    run = make_run(["https://acme.test/products/camisa-lino"])
    item = store.list_items(run.id)[0]
    store.fail_item(item.id, "Could not fetch product", exhaust=True)
    store.mark_run_status(run.id, constants.RUN_COMPLETED)

    handle_run_completed(store, run.id)

    row = brand_row(engine, brand_id)
    assert row["catalog_finished_at"] is None
    assert row["refresh_next_due_at"] is not None
