"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from healthsync.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthsync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports whether the sync engine is initialized and scheduled.
    """
    integration = getattr(request.app.state, "integration", None)
    status = integration.get_sync_status() if integration is not None else None

    return {
        "status": "healthy" if integration is not None else "starting",
        "version": settings.app_version,
        "environment": settings.environment,
        "sync_running": bool(status and status.is_running),
        "connected_sources": [s.value for s in status.connected_sources] if status else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
