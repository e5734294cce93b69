"""trainsync API — FastAPI application entry point.

Run locally:
    uvicorn trainsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from trainsync.config import get_settings
from trainsync.routers import health, sync
from trainsync.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("trainsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting trainsync API v%s [%s] provider=%s",
        settings.app_version,
        settings.environment,
        settings.garmin_provider,
    )
    await init_pool(settings)
    yield
    await close_pool()
    logger.info("trainsync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="trainsync API",
        description="Wearable provider sync: activities, health snapshots, training-plan reconciliation.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"
    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
