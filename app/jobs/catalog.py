"""Catalog job entry points run by Celery workers or from the command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os

from dotenv import load_dotenv

from app.catalog.drain import DrainOptions
from app.catalog.refresh import run_refresh_batch
from app.catalog.services import CatalogServices, build_services

logger = logging.getLogger(__name__)


def _configure() -> None:
    load_dotenv()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))


async def process_item(item_id: int, services: CatalogServices | None = None) -> dict[str, object]:
    """Worker path: process one item, then top the queue back up."""
    owned = services is None
    if services is None:
        _configure()
        from app.jobs.celery_app import celery_app

        services = build_services(celery_app=celery_app)
    try:
        result = await services.processor.process_item_by_id(item_id)
        item = services.store.get_item(item_id)
        if item is not None:
            await services.dispatcher.prime(item.run_id)
        return result.as_dict()
    finally:
        if owned:
            await services.close()


async def run_drain(brand_id: int | None = None, services: CatalogServices | None = None) -> dict[str, object]:
    owned = services is None
    if services is None:
        _configure()
        services = build_services()
    try:
        result = await services.drain.drain(DrainOptions(brand_id=brand_id))
        return result.as_dict()
    finally:
        if owned:
            await services.close()


async def run_refresh(services: CatalogServices | None = None) -> dict[str, list[int]]:
    owned = services is None
    if services is None:
        _configure()
        services = build_services()
    try:
        return await run_refresh_batch(services)
    finally:
        if owned:
            await services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run catalog jobs without a worker")
    sub = parser.add_subparsers(dest="command", required=True)
    drain = sub.add_parser("drain")
    drain.add_argument("--brand-id", type=int)
    sub.add_parser("refresh")
    args = parser.parse_args()

    if args.command == "drain":
        print(asyncio.run(run_drain(args.brand_id)))
    else:
        print(asyncio.run(run_refresh()))


if __name__ == "__main__":
    main()
