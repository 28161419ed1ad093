"""HealthSync API — FastAPI application entry point.

Run locally:
    uvicorn healthsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthsync.config import get_settings
from healthsync.routers import health, wearables
from healthsync.wearables.integration import WearableIntegration

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logging.getLogger("healthsync").setLevel(settings.log_level.upper())
    logger.info(
        "Starting HealthSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    if getattr(app.state, "integration", None) is None:
        integration = WearableIntegration(settings=settings)
        if settings.sync_config_path and not integration.load_config(settings.sync_config_path):
            logger.warning("Sync config %s not found; using defaults", settings.sync_config_path)
        app.state.integration = integration

    yield

    await app.state.integration.aclose()
    logger.info("HealthSync API shut down")


# ---------- App factory ----------

def create_app(integration: WearableIntegration | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        integration: Pre-built integration (tests); built from settings at
                     startup when omitted.
    """
    settings = get_settings()

    app = FastAPI(
        title="HealthSync API",
        description=(
            "Wearable data synchronization: connect Apple Health, Google Fit "
            "and Fitbit, run scheduled syncs, inspect logs and manage backups."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.integration = integration

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(wearables.router, prefix="/api/v1")

    return app


app = create_app()
