"""HealthSync wearable synchronization engine.

This package pulls health metrics from wearable platforms, validates and
normalizes them, flags statistical anomalies, stores them with
deduplication and takes periodic backups.

Subpackages:
    adapters/ — Platform connectors (Apple Health, Google Fit, Fitbit, simulated)
    sync/     — Sync manager and periodic scheduler

Core modules:
    base             — WearableConnector ABC and canonical data models
    config_loader    — Load/validate/persist sync_config.yaml
    validator        — Per-metric plausibility rules
    normalizer       — Unit conversion and value transformation rules
    anomaly_detector — Rolling z-score anomaly detection
    store            — Deduplicating in-memory data point store
    backup           — Full/incremental backups with retention cleanup
    battery          — Battery-aware sync admission
    sync_logger      — Bounded structured sync log
    integration      — WearableIntegration facade (import from the module)
"""

from healthsync.wearables.base import (
    HealthDataPoint,
    HealthMetricType,
    SyncStatus,
    WearableConnector,
    WearableDataSource,
)
from healthsync.wearables.config_loader import SyncConfig, load_default_config

__all__ = [
    "WearableConnector",
    "WearableDataSource",
    "HealthMetricType",
    "HealthDataPoint",
    "SyncStatus",
    "SyncConfig",
    "load_default_config",
]
