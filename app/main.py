from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from datastore.history import build_default_store
from logging_config import configure_logging
from services.consumer import build_default_consumer
from services.ingest import build_default_ingest
from transport.memory_queue import build_default_queue


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    consumer = build_default_consumer()
    consumer.start()
    try:
        yield
    finally:
        consumer.stop(timeout=consumer.store_timeout + consumer.poll_interval)
        consumer.queue.close()
        consumer.store.close()
        build_default_ingest.cache_clear()
        build_default_consumer.cache_clear()
        build_default_queue.cache_clear()
        build_default_store.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Telemetry Rule Engine",
        description="Ingests device readings and raises instant and sustained pressure alerts.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
