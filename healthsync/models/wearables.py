"""Pydantic request/response models for the wearable sync API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from healthsync.models.base import HealthSyncBase
from healthsync.wearables.base import HealthMetricType, LogLevel, SyncStatus, WearableDataSource


# ---------- Connectors ----------

class ConnectorAuthRequest(HealthSyncBase):
    auth_config: dict[str, Any] = Field(default_factory=dict)


class ConnectorRead(HealthSyncBase):
    platform: WearableDataSource
    connected: bool


class ConnectedPlatformsRead(HealthSyncBase):
    platforms: list[WearableDataSource]


class AuthorizationUrlRead(HealthSyncBase):
    platform: WearableDataSource
    url: str


# ---------- Sync ----------

class SyncRequest(HealthSyncBase):
    metric_types: list[HealthMetricType] | None = None


class BackfillRequest(HealthSyncBase):
    platform: WearableDataSource | None = None


class SyncIssueRead(HealthSyncBase):
    source: WearableDataSource | None = None
    code: str
    message: str
    timestamp: datetime
    metric_type: HealthMetricType | None = None


class SyncStatsRead(HealthSyncBase):
    total_synced: int = 0
    synced_by_metric_type: dict[str, int] = Field(default_factory=dict)
    errors: list[SyncIssueRead] = Field(default_factory=list)
    warnings: list[SyncIssueRead] = Field(default_factory=list)
    anomalies_detected: int = 0


class SyncStatusRead(HealthSyncBase):
    is_running: bool
    last_sync_time: datetime | None = None
    next_sync_time: datetime | None = None
    connected_sources: list[WearableDataSource] = Field(default_factory=list)
    last_sync_stats: SyncStatsRead | None = None

    @classmethod
    def from_status(cls, status: SyncStatus) -> "SyncStatusRead":
        return cls.model_validate(status.to_dict())


# ---------- Logs ----------

class LogEntryRead(HealthSyncBase):
    timestamp: str
    level: LogLevel
    message: str
    data: str | None = None


# ---------- Backups ----------

class BackupRead(HealthSyncBase):
    id: str
    timestamp: datetime
    size: int
    is_incremental: bool
    encrypted: bool = False


class RestoreRead(HealthSyncBase):
    backup_id: str
    restored: int
