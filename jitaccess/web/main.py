"""
jit-access HTTP application.

Intent:
    Expose access requests, role administration and the catalog sync
    protocol over FastAPI. Core objects are wired once per process by
    `jitaccess.web.services`; tests replace them with `set_services`.

Embedded worker:
    With `JIT_EMBEDDED_WORKER` enabled (default for the memory store) the
    lifespan runs the same `run_once` loop as `jitaccess.grants.worker` in a
    background task, so a single process can serve and advance executions.

Run:
    uvicorn jitaccess.web.main:app
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool

from jitaccess import __version__
from jitaccess.config import ensure_secure_config_on_startup
from jitaccess.grants.orchestrator import GrantOrchestrator

from .routes import operations_router, requests_router, roles_router, sync_router
from .services import get_services

LOG = logging.getLogger(__name__)


async def run_embedded_worker(orchestrator: GrantOrchestrator, *, poll_interval: float) -> None:
    """Advance due executions until cancelled; store errors are logged and retried."""
    while True:
        try:
            processed = await run_in_threadpool(orchestrator.run_once)
        except Exception:
            LOG.exception("web.worker.step_failed worker=%s", orchestrator.worker_id)
            processed = False
        if not processed:
            await asyncio.sleep(poll_interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_secure_config_on_startup()
    services = get_services()
    task = None
    if services.config.embedded_worker:
        task = asyncio.create_task(
            run_embedded_worker(services.orchestrator, poll_interval=services.config.poll_interval_seconds)
        )
        LOG.info("web.worker.started worker=%s", services.orchestrator.worker_id)
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                LOG.info("web.worker.stopped worker=%s", services.orchestrator.worker_id)


def create_app() -> FastAPI:
    level_name = os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=level_name.strip().upper() or "INFO")
    app = FastAPI(
        title="jit-access",
        description="Just-in-time access requests, approvals and time-bounded grants",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(requests_router)
    app.include_router(roles_router)
    app.include_router(sync_router)
    app.include_router(operations_router)
    return app


app = create_app()
