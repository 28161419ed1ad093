"""Endpoints for wearable connectors, sync control, config, logs and backups."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query

from healthsync.dependencies import Integration
from healthsync.models.wearables import (
    AuthorizationUrlRead,
    BackfillRequest,
    BackupRead,
    ConnectedPlatformsRead,
    ConnectorAuthRequest,
    ConnectorRead,
    LogEntryRead,
    RestoreRead,
    SyncRequest,
    SyncStatusRead,
)
from healthsync.wearables.backup import BackupError, BackupNotFoundError
from healthsync.wearables.base import UnsupportedPlatformError, WearableDataSource
from healthsync.wearables.config_loader import ConfigValidationError

router = APIRouter(prefix="/wearables", tags=["wearables"])
logger = logging.getLogger("healthsync.routers.wearables")


def _platform(value: str) -> WearableDataSource:
    try:
        return WearableDataSource(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown platform '{value}'") from None


# ---------- Connectors ----------

@router.get("/connectors", response_model=ConnectedPlatformsRead)
async def list_connectors(integration: Integration) -> Any:
    return ConnectedPlatformsRead(platforms=integration.get_connected_platforms())


@router.post("/connectors/{platform}", response_model=ConnectorRead, status_code=201)
async def connect_platform(
    platform: str,
    integration: Integration,
    body: ConnectorAuthRequest | None = None,
) -> Any:
    source = _platform(platform)
    auth_config = body.auth_config if body is not None else {}
    if not await integration.initialize_connector(source, auth_config):
        raise HTTPException(
            status_code=400,
            detail=f"Could not connect {source.value}; see sync logs for details",
        )
    return ConnectorRead(platform=source, connected=True)


@router.get("/connectors/{platform}/authorization-url", response_model=AuthorizationUrlRead)
async def authorization_url(
    platform: str,
    integration: Integration,
    state: str = Query(min_length=1),
) -> Any:
    source = _platform(platform)
    try:
        url = integration.authorization_url(source, state)
    except UnsupportedPlatformError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return AuthorizationUrlRead(platform=source, url=url)


@router.delete("/connectors/{platform}", status_code=204)
async def disconnect_platform(platform: str, integration: Integration) -> None:
    source = _platform(platform)
    if source not in integration.get_connected_platforms():
        raise HTTPException(status_code=404, detail=f"{source.value} is not connected")
    if not await integration.revoke_authorization(source):
        raise HTTPException(status_code=502, detail=f"Could not revoke {source.value}")


# ---------- Sync ----------

@router.post("/sync/start", response_model=SyncStatusRead)
async def start_sync(integration: Integration) -> Any:
    if not await integration.start_sync():
        raise HTTPException(status_code=409, detail="No connectors initialized")
    return SyncStatusRead.from_status(integration.get_sync_status())


@router.post("/sync/stop", response_model=SyncStatusRead)
async def stop_sync(integration: Integration) -> Any:
    integration.stop_sync()
    return SyncStatusRead.from_status(integration.get_sync_status())


@router.post("/sync", response_model=SyncStatusRead)
async def sync_now(integration: Integration, body: SyncRequest | None = None) -> Any:
    metric_types = body.metric_types if body is not None else None
    status = await integration.sync_now(metric_types)
    return SyncStatusRead.from_status(status)


@router.post("/sync/backfill", response_model=SyncStatusRead)
async def backfill(integration: Integration, body: BackfillRequest | None = None) -> Any:
    platform = body.platform if body is not None else None
    status = await integration.backfill_history(platform)
    return SyncStatusRead.from_status(status)


@router.get("/sync/status", response_model=SyncStatusRead)
async def sync_status(integration: Integration) -> Any:
    return SyncStatusRead.from_status(integration.get_sync_status())


# ---------- Config ----------

@router.get("/config")
async def get_config(integration: Integration) -> dict[str, Any]:
    return integration.get_config().to_dict()


@router.patch("/config")
async def update_config(
    integration: Integration,
    body: dict[str, Any] = Body(...),
) -> dict[str, Any]:
    try:
        config = integration.update_config(body)
    except ConfigValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return config.to_dict()


# ---------- Logs ----------

@router.get("/logs", response_model=list[LogEntryRead])
async def get_logs(
    integration: Integration,
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> Any:
    return [entry.to_dict() for entry in integration.get_sync_logs(limit)]


# ---------- Backups ----------

@router.get("/backups", response_model=list[BackupRead])
async def list_backups(integration: Integration) -> Any:
    try:
        return [b.to_dict() for b in integration.list_backups()]
    except BackupError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/backups/{backup_id}/restore", response_model=RestoreRead)
async def restore_backup(backup_id: str, integration: Integration) -> Any:
    try:
        restored = integration.restore_from_backup(backup_id)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except BackupError as exc:
        logger.warning("Restore of %s failed: %s", backup_id, exc)
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return RestoreRead(backup_id=backup_id, restored=restored)
