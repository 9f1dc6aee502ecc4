import time

import httpx
import pytest
import respx
from kombu.exceptions import OperationalError

from app.catalog import constants
from app.catalog.dispatch import PROCESS_ITEM_TASK, CeleryDispatcher, InlineDispatcher, select_dispatcher
from app.catalog.drain import DrainController, DrainOptions
from app.catalog.runs import start_run
from app.jobs.catalog import process_item

URLS = [f"https://acme.test/products/item-{index}" for index in range(4)]


class FakeConnection:
    def __init__(self, fail: bool) -> None:
        self.fail = fail

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ensure_connection(self, max_retries=None):
        if self.fail:
            raise OperationalError("Error 111 connecting to redis:6379. Connection refused.")


class FakeCelery:
    def __init__(self, *, reachable: bool = True) -> None:
        self.reachable = reachable
        self.sent = []

    def connection_for_write(self):
        return FakeConnection(fail=not self.reachable)

    def send_task(self, name, args=None, task_id=None):
        self.sent.append((name, args, task_id))


def test_inline_dispatcher_when_queue_disabled(services):
    dispatcher = select_dispatcher(services.store, services.processor, FakeCelery())
    assert isinstance(dispatcher, InlineDispatcher)
    assert isinstance(services.drain.dispatcher, InlineDispatcher)


def test_celery_dispatcher_when_broker_answers(monkeypatch, services):
    monkeypatch.setenv("CATALOG_QUEUE_ENABLED", "true")
    dispatcher = select_dispatcher(services.store, services.processor, FakeCelery())
    assert isinstance(dispatcher, CeleryDispatcher)


def test_inline_fallback_when_broker_unreachable(monkeypatch, services):
    monkeypatch.setenv("CATALOG_QUEUE_ENABLED", "true")
    dispatcher = select_dispatcher(services.store, services.processor, FakeCelery(reachable=False))
    assert isinstance(dispatcher, InlineDispatcher)


@pytest.mark.asyncio
async def test_celery_dispatch_publishes_each_item_once(services, make_run):
    celery = FakeCelery()
    dispatcher = CeleryDispatcher(services.store, celery)
    run = make_run(URLS)
    items = services.store.list_pending_items(run.id, 10)

    results = await dispatcher.dispatch(items)
    assert [(result.item_id, result.status) for result in results] == [(item.id, "queued") for item in items]
    assert await dispatcher.dispatch(items) == []

    assert [task_id for _, _, task_id in celery.sent] == [f"catalog-item-{item.id}" for item in items]
    assert {name for name, _, _ in celery.sent} == {PROCESS_ITEM_TASK}
    statuses = {item.status for item in services.store.list_items(run.id)}
    assert statuses == {constants.ITEM_QUEUED}


@pytest.mark.asyncio
async def test_inline_dispatch_processes_items(services, fake_site, make_run):
    for url in URLS:
        fake_site.pages[url] = None
    run = make_run(URLS)
    dispatcher = InlineDispatcher(services.processor, concurrency=2)

    results = await dispatcher.dispatch(services.store.list_pending_items(run.id, 10))

    assert [result.status for result in results] == ["failed"] * 4
    assert services.store.summarize_run(run.id).failed == 4
    assert await dispatcher.prime(run.id) == 0


@pytest.mark.asyncio
async def test_inline_dispatch_skips_items_past_deadline(services, fake_site, make_run):
    run = make_run(URLS)
    dispatcher = InlineDispatcher(services.processor)

    results = await dispatcher.dispatch(services.store.list_pending_items(run.id, 10), deadline=time.monotonic() - 1)

    assert results == []
    assert fake_site.calls == []
    assert services.store.summarize_run(run.id).pending == 4


@pytest.mark.asyncio
async def test_drain_hands_rounds_to_celery(services, fake_site, make_run):
    celery = FakeCelery()
    drain = DrainController(services.store, CeleryDispatcher(services.store, celery))
    run = make_run(URLS)

    result = await drain.drain(DrainOptions(concurrency=2, max_wall_clock_ms=2000))

    assert result.processed == 4
    assert result.last_result.status == "queued"
    assert len(celery.sent) == 4
    assert fake_site.calls == []
    assert services.store.get_run(run.id).status == constants.RUN_PROCESSING


@pytest.mark.asyncio
async def test_start_run_primes_celery(monkeypatch, services, fake_site, brand_id):
    monkeypatch.setenv("CATALOG_QUEUE_ENQUEUE_LIMIT", "3")
    celery = FakeCelery()
    services.dispatcher = CeleryDispatcher(services.store, celery)
    fake_site.discovered = list(URLS)

    with respx.mock(assert_all_called=False) as router:
        router.get(host="acme.test").mock(return_value=httpx.Response(404))
        run = await start_run(services, brand_id, 20)

    assert len(celery.sent) == 3
    counts = services.store.count_items_by_status(run.id)
    assert counts == {constants.ITEM_QUEUED: 3, constants.ITEM_PENDING: 1}


@pytest.mark.asyncio
async def test_worker_task_refills_queue(monkeypatch, services, fake_site, make_run, raw_product):
    monkeypatch.setenv("CATALOG_QUEUE_ENQUEUE_LIMIT", "2")
    celery = FakeCelery()
    services.dispatcher = CeleryDispatcher(services.store, celery)
    fake_site.pages[URLS[0]] = raw_product(URLS[0])
    run = make_run(URLS)
    first = services.store.list_items(run.id)[0]
    services.store.mark_items_queued([first.id])

    result = await process_item(first.id, services)

    assert result["status"] == "completed"
    assert len(celery.sent) == 2
    assert f"catalog-item-{first.id}" not in [task_id for _, _, task_id in celery.sent]


@pytest.mark.asyncio
async def test_prime_skips_runs_that_stopped(services, make_run):
    celery = FakeCelery()
    dispatcher = CeleryDispatcher(services.store, celery)
    run = make_run(URLS)
    services.store.mark_run_status(run.id, constants.RUN_STOPPED)

    assert await dispatcher.prime(run.id) == 0
    assert celery.sent == []
