import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.main import app, get_services
from app.catalog import constants
from app.catalog.http import CatalogHttpClient
from app.catalog.llm import PdpLlm
from app.catalog.services import build_services
from app.utils.rate_limit import RateLimiter
from app.utils.tokens import generate_admin_token, generate_token

URL = "https://acme.test/products/camisa-lino"


@pytest.fixture()
def api_services(engine, fake_site):
    http = CatalogHttpClient(
        session=httpx.AsyncClient(),
        rate_limiter=RateLimiter(rate=0),
        respect_robots=False,
        retry_attempts=1,
    )
    services = build_services(engine, http=http, llm=PdpLlm(None))
    yield services
    asyncio.run(services.close())


@pytest.fixture()
def client(api_services):
    app.dependency_overrides[get_services] = lambda: api_services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def admin():
    return {"Authorization": f"Bearer {generate_admin_token('ops@example.com')}"}


def test_requires_admin_token(client, brand_id):
    assert client.get("/catalog-extractor/state", params={"brandId": brand_id}).status_code == 401
    viewer = generate_token({"email": "viewer@example.com", "role": "viewer"})
    response = client.get(
        "/catalog-extractor/state",
        params={"brandId": brand_id},
        headers={"Authorization": f"Bearer {viewer}"},
    )
    assert response.status_code == 401


def test_state_and_brand_listing(client, admin, make_run, brand_id):
    assert client.get("/catalog-extractor/state", params={"brandId": brand_id}, headers=admin).json() == {"state": None}

    run = make_run([URL])
    state = client.get("/catalog-extractor/state", params={"brandId": brand_id}, headers=admin).json()["state"]
    assert state["runId"] == run.id
    assert state["status"] == "processing"
    assert state["total"] == state["pending"] == 1

    brands = client.get("/catalog-extractor/brands", headers=admin).json()["brands"]
    assert [brand["slug"] for brand in brands] == ["acme"]
    assert brands[0]["runState"]["runId"] == run.id


def test_lifecycle_endpoints(client, admin, make_run, brand_id):
    make_run([URL])
    body = {"brandId": brand_id}

    assert client.post("/catalog-extractor/pause", json=body, headers=admin).json()["state"]["status"] == "paused"
    assert client.post("/catalog-extractor/pause", json=body, headers=admin).status_code == 409
    assert client.post("/catalog-extractor/resume", json=body, headers=admin).json()["state"]["status"] == "processing"
    assert client.post("/catalog-extractor/reset", json=body, headers=admin).status_code == 409
    assert client.post("/catalog-extractor/stop", json=body, headers=admin).json()["status"] == "stopped"
    assert client.post("/catalog-extractor/finish", json={**body, "reason": "done"}, headers=admin).json() == {
        "status": "finished"
    }
    assert client.get("/catalog-extractor/brands", headers=admin).json() == {"brands": []}


def test_missing_run_and_brand(client, admin, brand_id):
    assert client.post("/catalog-extractor/pause", json={"brandId": brand_id}, headers=admin).status_code == 404
    assert client.post("/catalog-extractor/run", json={"brandId": 999}, headers=admin).status_code == 404
    assert client.post("/catalog-extractor/process-item", json={"itemId": 999}, headers=admin).status_code == 404


def test_run_conflicts_with_active_run(client, admin, make_run, brand_id):
    make_run([URL])
    response = client.post("/catalog-extractor/run", json={"brandId": brand_id, "limit": 5}, headers=admin)
    assert response.status_code == 409


def test_drain_with_cron_secret(monkeypatch, client, admin, fake_site, make_run, raw_product, brand_id):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    fake_site.pages[URL] = raw_product(URL)
    run = make_run([URL])

    assert client.post("/catalog-extractor/drain", json={}, headers={"X-Cron-Secret": "wrong"}).status_code == 401
    response = client.post(
        "/catalog-extractor/drain",
        json={"brandId": brand_id, "drainConcurrency": 1, "drainMaxMs": 5000},
        headers={"X-Cron-Secret": "s3cret"},
    )

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    assert response.json()["lastResult"]["status"] == "completed"
    assert fake_site.calls == [URL]
    state = client.get("/catalog-extractor/state", params={"brandId": brand_id}, headers=admin).json()["state"]
    assert state["runId"] == run.id
    assert state["status"] == constants.RUN_COMPLETED


def test_refresh_cron_accepts_scheduler_header(monkeypatch, client, admin):
    assert client.post("/catalog-refresh/cron", headers=admin).status_code == 401
    assert client.post("/catalog-refresh/cron", headers={"X-Scheduler": "cron"}).status_code == 401

    monkeypatch.setenv("CRON_ALLOW_SCHEDULER_HEADER", "1")
    response = client.post("/catalog-refresh/cron", headers={"X-Scheduler": "cron"})
    assert response.status_code == 200
    assert response.json() == {"started": [], "skipped": []}


def test_platforms(client, admin):
    platforms = client.get("/catalog-extractor/platforms", headers=admin).json()["platforms"]
    assert {"shopify", "woocommerce", "custom"} <= set(platforms)
