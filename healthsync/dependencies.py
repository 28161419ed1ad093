"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from healthsync.config import Settings, get_settings
from healthsync.wearables.integration import WearableIntegration


async def get_integration(request: Request) -> WearableIntegration:
    """Return the process-wide integration built during app startup."""
    integration: WearableIntegration | None = getattr(request.app.state, "integration", None)
    if integration is None:
        raise HTTPException(status_code=503, detail="Wearable integration not ready")
    return integration


# Annotated shortcuts for route signatures
Integration = Annotated[WearableIntegration, Depends(get_integration)]
AppSettings = Annotated[Settings, Depends(get_settings)]
