# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run with:  uvicorn fundbot.main:app --host 0.0.0.0 --port 8000
#
# The lifespan configures logging once and runs the maintenance loop, which
# sweeps expired rate windows, budget ledgers, cache entries and thread
# contexts every MAINTENANCE_INTERVAL_SECONDS. On shutdown the loop is
# cancelled and the Slack HTTP client closed.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fundbot.api import admin, events
from fundbot.api.deps import current_orchestrator
from fundbot.config import configure_logging, settings
from fundbot.models.responses import HealthResponse

logger = logging.getLogger(__name__)


async def maintenance_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        orchestrator = current_orchestrator()
        if orchestrator is None:
            continue
        try:
            await orchestrator.sweep_expired()
        except Exception as e:
            logger.warning("Maintenance sweep failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(
        "Starting %s v%s (state backend: %s, provider: %s)",
        settings.app_name, settings.app_version,
        settings.state_backend, settings.llm_provider,
    )
    task = asyncio.create_task(
        maintenance_loop(settings.maintenance_interval_seconds)
    )
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        orchestrator = current_orchestrator()
        if orchestrator is not None and hasattr(orchestrator.chat, "aclose"):
            await orchestrator.chat.aclose()
        logger.info("Shut down %s", settings.app_name)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Slack assistant answering portfolio and market questions.",
        lifespan=lifespan,
    )
    app.include_router(events.router)
    app.include_router(admin.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            version=settings.app_version,
            service=settings.app_name,
            state_backend=settings.state_backend,
        )

    return app


app = create_app()
