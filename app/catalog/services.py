"""Explicitly constructed handles shared by the API, jobs and tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.engine import Engine

from app.catalog.dispatch import CeleryDispatcher, Dispatcher, select_dispatcher
from app.catalog.drain import DrainController
from app.catalog.http import CatalogHttpClient
from app.catalog.llm import PdpLlm
from app.catalog.processor import ItemProcessor
from app.catalog.products import ProductWriter
from app.catalog.store import CatalogStore
from app.db.session import get_engine

if TYPE_CHECKING:
    from celery import Celery


@dataclass(slots=True)
class CatalogServices:
    engine: Engine
    store: CatalogStore
    http: CatalogHttpClient
    processor: ItemProcessor
    drain: DrainController
    dispatcher: Dispatcher

    async def close(self) -> None:
        await self.http.close()


def build_services(
    engine: Engine | None = None,
    *,
    http: CatalogHttpClient | None = None,
    llm: PdpLlm | None = None,
    dispatcher: Dispatcher | None = None,
    celery_app: "Celery | None" = None,
) -> CatalogServices:
    """Wire the catalog pipeline.

    Passing ``celery_app`` forces queue dispatch (the worker path); otherwise
    the dispatcher is chosen from the environment.
    """
    engine = engine or get_engine()
    store = CatalogStore(engine)
    http = http or CatalogHttpClient()
    processor = ItemProcessor(store, ProductWriter(engine), http, llm if llm is not None else PdpLlm.from_env())
    if dispatcher is None:
        if celery_app is not None:
            dispatcher = CeleryDispatcher(store, celery_app)
        else:
            dispatcher = select_dispatcher(store, processor)
    return CatalogServices(
        engine=engine,
        store=store,
        http=http,
        processor=processor,
        drain=DrainController(store, dispatcher),
        dispatcher=dispatcher,
    )
