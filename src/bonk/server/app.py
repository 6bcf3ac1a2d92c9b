"""FastAPI application factory for the bonk server."""

from __future__ import annotations

import asyncio
import contextlib
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from bonk.config import BonkConfig
from bonk.github import create_client
from bonk.metrics import MetricsStore
from bonk.orchestrator import Orchestrator
from bonk.scheduler import TimerDriver
from bonk.store import TrackerStore
from bonk.tracker import ClientFactory, TrackerRegistry

from .api import router as api_router
from .webhooks import router as webhooks_router

log = structlog.get_logger()


def create_app(
    config: BonkConfig | None = None,
    *,
    client_factory: ClientFactory | None = None,
    run_timers: bool = True,
) -> FastAPI:
    if config is None:
        config = BonkConfig()
    if client_factory is None:
        client_factory = functools.partial(create_client, config)

    store = TrackerStore(config.resolved_db_path())
    metrics = MetricsStore(config.resolved_db_path())
    registry = TrackerRegistry(config, store, client_factory, metrics=metrics)
    driver = TimerDriver(config, store, registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.init_db()
        await metrics.init_db()
        task = asyncio.create_task(driver.start()) if run_timers else None
        log.info("server_started", host=config.host, port=config.port)
        yield
        await driver.stop()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await driver.drain()

    app = FastAPI(title="Bonk", lifespan=lifespan)

    app.state.config = config
    app.state.store = store
    app.state.metrics = metrics
    app.state.registry = registry
    app.state.driver = driver
    app.state.client_factory = client_factory
    app.state.orchestrator = Orchestrator(config, client_factory, metrics=metrics)

    @app.get("/", response_class=PlainTextResponse)
    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    app.include_router(webhooks_router)
    app.include_router(api_router)

    return app
