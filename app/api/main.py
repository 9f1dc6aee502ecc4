"""FastAPI application for the catalog extractor admin and cron endpoints."""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, NoReturn

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from app.catalog.drain import DrainOptions
from app.catalog.errors import CatalogError
from app.catalog.refresh import run_refresh_batch
from app.catalog.registry import list_platforms
from app.catalog.runs import (
    BrandNotFound,
    RunNotFound,
    brand_state,
    finish_brand,
    pause_run,
    reset_run,
    resume_run,
    start_run,
    stop_run,
)
from app.catalog.services import CatalogServices, build_services
from app.catalog.store import RunSummary
from app.db.session import dispose_engine
from app.utils.dates import isoformat
from app.utils.tokens import InvalidToken, load_token

logger = logging.getLogger(__name__)

app = FastAPI(title="Catalog Extractor API")


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunRequest(CamelModel):
    brand_id: int = Field(alias="brandId")
    limit: int = Field(default=20, ge=1)


class BrandRequest(CamelModel):
    brand_id: int = Field(alias="brandId")


class FinishRequest(CamelModel):
    brand_id: int = Field(alias="brandId")
    reason: str | None = None


class DrainRequest(CamelModel):
    brand_id: int | None = Field(default=None, alias="brandId")
    drain_batch: int | None = Field(default=None, alias="drainBatch")
    drain_concurrency: int | None = Field(default=None, alias="drainConcurrency")
    drain_max_ms: int | None = Field(default=None, alias="drainMaxMs")


class ProcessItemRequest(CamelModel):
    item_id: int = Field(alias="itemId")


def get_services(request: Request) -> CatalogServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


@app.on_event("shutdown")
async def close_services() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.close()
    dispose_engine()


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _admin_from_header(authorization: str | None) -> dict[str, object] | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        data = load_token(authorization[7:].strip())
    except InvalidToken:
        return None
    return data if data.get("role") == "admin" else None


def _is_cron(x_cron_secret: str | None, x_scheduler: str | None) -> bool:
    secret = os.environ.get("CRON_SECRET")
    if secret and x_cron_secret and hmac.compare_digest(secret, x_cron_secret):
        return True
    return _flag("CRON_ALLOW_SCHEDULER_HEADER") and (x_scheduler or "").lower() == "cron"


def require_admin(authorization: str | None = Header(default=None)) -> dict[str, object]:
    admin = _admin_from_header(authorization)
    if admin is None:
        raise HTTPException(status_code=401, detail="unauthorized")
    return admin


def require_admin_or_cron(
    authorization: str | None = Header(default=None),
    x_cron_secret: str | None = Header(default=None),
    x_scheduler: str | None = Header(default=None),
) -> None:
    if _admin_from_header(authorization) is None and not _is_cron(x_cron_secret, x_scheduler):
        raise HTTPException(status_code=401, detail="unauthorized")


def require_cron(
    x_cron_secret: str | None = Header(default=None),
    x_scheduler: str | None = Header(default=None),
) -> None:
    if not _is_cron(x_cron_secret, x_scheduler):
        raise HTTPException(status_code=401, detail="unauthorized")


def summary_payload(summary: RunSummary | None) -> dict[str, Any] | None:
    if summary is None:
        return None
    return {
        "runId": summary.run_id,
        "brandId": summary.brand_id,
        "status": summary.status,
        "platform": summary.platform,
        "total": summary.total,
        "completed": summary.completed,
        "failed": summary.failed,
        "pending": summary.pending,
        "lastUrl": summary.last_url,
        "lastStage": summary.last_stage,
        "lastError": summary.last_error,
        "blockReason": summary.block_reason,
        "consecutiveErrors": summary.consecutive_errors,
        "startedAt": isoformat(summary.started_at),
        "updatedAt": isoformat(summary.updated_at),
        "finishedAt": isoformat(summary.finished_at),
    }


def _raise_for(exc: CatalogError) -> NoReturn:
    if isinstance(exc, (BrandNotFound, RunNotFound)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    # ActiveRunExists and refused transitions both conflict with current run state
    raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/catalog-extractor/run", dependencies=[Depends(require_admin)])
async def run_catalog(payload: RunRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        run = await start_run(services, payload.brand_id, payload.limit)
    except CatalogError as exc:
        _raise_for(exc)
    return {"state": summary_payload(services.store.summarize_run(run.id))}


@app.post("/catalog-extractor/drain", dependencies=[Depends(require_admin_or_cron)])
async def drain_catalog(
    payload: DrainRequest | None = None,
    services: CatalogServices = Depends(get_services),
) -> dict[str, Any]:
    payload = payload or DrainRequest()
    result = await services.drain.drain(
        DrainOptions(
            brand_id=payload.brand_id,
            batch_size=payload.drain_batch,
            concurrency=payload.drain_concurrency,
            max_wall_clock_ms=payload.drain_max_ms,
        )
    )
    return result.as_dict()


@app.post("/catalog-extractor/pause", dependencies=[Depends(require_admin)])
async def pause_catalog(payload: BrandRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        summary = pause_run(services.store, payload.brand_id)
    except CatalogError as exc:
        _raise_for(exc)
    return {"state": summary_payload(summary)}


@app.post("/catalog-extractor/resume", dependencies=[Depends(require_admin)])
async def resume_catalog(payload: BrandRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        summary = resume_run(services.store, payload.brand_id)
    except CatalogError as exc:
        _raise_for(exc)
    return {"state": summary_payload(summary)}


@app.post("/catalog-extractor/reset", dependencies=[Depends(require_admin)])
async def reset_catalog(payload: BrandRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        summary = reset_run(services.store, payload.brand_id)
    except CatalogError as exc:
        _raise_for(exc)
    return {"state": summary_payload(summary)}


@app.post("/catalog-extractor/stop", dependencies=[Depends(require_admin)])
async def stop_catalog(payload: BrandRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        summary = stop_run(services.store, payload.brand_id)
    except CatalogError as exc:
        _raise_for(exc)
    return {"status": summary.status, "state": summary_payload(summary)}


@app.get("/catalog-extractor/state", dependencies=[Depends(require_admin)])
async def catalog_state(
    brand_id: int = Query(..., alias="brandId"),
    services: CatalogServices = Depends(get_services),
) -> dict[str, Any]:
    return {"state": summary_payload(brand_state(services.store, brand_id))}


@app.post("/catalog-extractor/process-item", dependencies=[Depends(require_admin_or_cron)])
async def process_item(
    payload: ProcessItemRequest,
    services: CatalogServices = Depends(get_services),
) -> dict[str, Any]:
    result = await services.processor.process_item_by_id(payload.item_id)
    if result.status == "not_found":
        raise HTTPException(status_code=404, detail="item_not_found")
    return result.as_dict()


@app.post("/catalog-extractor/finish", dependencies=[Depends(require_admin)])
async def finish_catalog(payload: FinishRequest, services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    try:
        finish_brand(services.store, payload.brand_id, payload.reason or "manual")
    except CatalogError as exc:
        _raise_for(exc)
    return {"status": "finished"}


@app.get("/catalog-extractor/brands", dependencies=[Depends(require_admin)])
async def list_catalog_brands(services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    store = services.store
    rows = []
    for brand in store.list_brand_rows(include_finished=False):
        run = store.find_latest_run(brand["id"])
        rows.append(
            {
                "id": brand["id"],
                "name": brand["name"],
                "slug": brand["slug"],
                "siteUrl": brand["site_url"],
                "ecommercePlatform": brand["ecommerce_platform"],
                "runState": summary_payload(store.summarize_run(run.id)) if run else None,
            }
        )
    return {"brands": rows}


@app.get("/catalog-extractor/platforms", dependencies=[Depends(require_admin)])
async def list_catalog_platforms() -> dict[str, Any]:
    return {"platforms": list_platforms()}


@app.post("/catalog-refresh/cron", dependencies=[Depends(require_cron)])
async def refresh_cron(services: CatalogServices = Depends(get_services)) -> dict[str, Any]:
    return await run_refresh_batch(services)
