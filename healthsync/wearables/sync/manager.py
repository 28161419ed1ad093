"""Data sync manager: runs sync passes across all registered connectors.

A pass, for each connector (registration order) and each requested metric
(list order) it supports:

1. Fetch the last day of data, bounded by a per-fetch timeout.
2. Validate each point; rejected points become INVALID_DATA warnings.
3. Normalize accepted points to canonical units.
4. Run anomaly detection; anomalies are flagged and still stored.
5. Store the normalized point and count it.

A failing fetch becomes one SyncError for that (source, metric) and the
pass continues with the next pair.  When anything was synced, a backup is
taken if one is due.

Only one pass runs at a time.  A second concurrent request logs a warning
and returns the current status without fetching anything.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta
from typing import Iterable

from healthsync.wearables.anomaly_detector import AnomalyDetector
from healthsync.wearables.backup import BackupError, BackupManager
from healthsync.wearables.base import (
    Clock,
    HealthDataPoint,
    HealthMetricType,
    SyncError,
    SyncStats,
    SyncStatus,
    SyncWarning,
    WearableConnector,
    WearableDataSource,
    utc_now,
)
from healthsync.wearables.battery import BatteryOptimizer
from healthsync.wearables.config_loader import SyncConfig
from healthsync.wearables.normalizer import DataNormalizer
from healthsync.wearables.store import HealthDataStore
from healthsync.wearables.sync.scheduler import PeriodicSync
from healthsync.wearables.sync_logger import SyncLogger
from healthsync.wearables.validator import DataValidator

# Error codes
SYNC_ERROR = "SYNC_ERROR"
FETCH_TIMEOUT = "FETCH_TIMEOUT"
BACKUP_ERROR = "BACKUP_ERROR"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

# Warning codes
INVALID_DATA = "INVALID_DATA"
ANOMALY_DETECTED = "ANOMALY_DETECTED"

#: Window fetched by a regular (manual or periodic) pass.
SYNC_WINDOW = timedelta(days=1)

DEFAULT_FETCH_TIMEOUT_SECONDS = 20.0


class DataSyncManager:
    """Orchestrate fetching, processing and storing data from connectors.

    Args:
        config:          Initial sync configuration.
        sync_logger:     In-app log sink.
        validator:       Point validator.
        normalizer:      Unit normalizer.
        anomaly_detector: Outlier detector.
        store:           Destination for accepted points.
        backup_manager:  Consulted after passes that synced data.
        battery:         Gate for periodic passes.
        clock:           Time source.
        fetch_timeout_seconds: Upper bound for one connector fetch.
    """

    def __init__(
        self,
        config: SyncConfig,
        sync_logger: SyncLogger,
        validator: DataValidator,
        normalizer: DataNormalizer,
        anomaly_detector: AnomalyDetector,
        store: HealthDataStore,
        backup_manager: BackupManager,
        battery: BatteryOptimizer,
        *,
        clock: Clock = utc_now,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        self._config = copy.deepcopy(config)
        self._log = sync_logger
        self._validator = validator
        self._normalizer = normalizer
        self._detector = anomaly_detector
        self._store = store
        self._backup = backup_manager
        self._battery = battery
        self._clock = clock
        self._fetch_timeout = fetch_timeout_seconds

        self._connectors: dict[WearableDataSource, WearableConnector] = {}
        self._status = SyncStatus()
        self._in_flight = False
        self._ticker: PeriodicSync | None = None

    # ------------------------------------------------------------------
    # Connector registry
    # ------------------------------------------------------------------

    @property
    def connectors(self) -> dict[WearableDataSource, WearableConnector]:
        return dict(self._connectors)

    def get_connector(self, source: WearableDataSource) -> WearableConnector | None:
        return self._connectors.get(source)

    def register_connector(self, source: WearableDataSource, connector: WearableConnector) -> None:
        self._connectors[source] = connector
        self._status.connected_sources = list(self._connectors)
        self._log.info(f"Registered connector for {source.value}")

    def unregister_connector(self, source: WearableDataSource) -> WearableConnector | None:
        connector = self._connectors.pop(source, None)
        self._status.connected_sources = list(self._connectors)
        if connector is not None:
            self._log.info(f"Unregistered connector for {source.value}")
        return connector

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def is_scheduled(self) -> bool:
        return self._status.is_running

    async def start_sync(self) -> None:
        """Run one pass now, then schedule periodic passes."""
        if self._status.is_running:
            self._log.warn("Sync already running")
            return
        self._status.is_running = True
        self._log.info(
            "Starting periodic sync",
            {"interval_minutes": self._config.sync_interval_minutes},
        )
        await self.sync_now()
        if self._status.is_running:
            self._start_ticker()

    def stop_sync(self) -> None:
        """Stop future periodic passes.  An in-flight pass is not interrupted."""
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None
        if self._status.is_running:
            self._status.is_running = False
            self._status.next_sync_time = None
            self._log.info("Periodic sync stopped")

    async def run_scheduled_pass(self) -> None:
        """One periodic tick: run a pass if the battery allows it."""
        if not self._battery.can_sync():
            self._log.info(
                "Skipping scheduled sync due to battery optimization",
                {
                    "battery_level": self._battery.get_battery_level(),
                    "optimization_level": self._battery.optimization_level.value,
                },
            )
            self._status.next_sync_time = self._clock() + self._interval()
            return
        await self.sync_now()

    def _interval(self) -> timedelta:
        return timedelta(minutes=self._config.sync_interval_minutes)

    def _start_ticker(self) -> None:
        self._ticker = PeriodicSync(self._interval().total_seconds(), self.run_scheduled_pass)
        self._ticker.start()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def sync_now(
        self, metric_types: Iterable[HealthMetricType] | None = None
    ) -> SyncStatus:
        """Run one pass over the last day of data.

        Args:
            metric_types: Metrics to sync.  Defaults to every metric a
                          registered connector supports, filtered by
                          ``enabled_metrics``.

        Returns:
            A copy of the status after the pass.
        """
        return await self._guarded_pass(self._connectors, metric_types, SYNC_WINDOW)

    async def backfill_history(self, source: WearableDataSource | None = None) -> SyncStatus:
        """Run one pass over ``historical_data_days`` of data.

        Args:
            source: Only backfill this platform (default: every connector).
        """
        if not self._config.sync_historical_data:
            self._log.warn("Historical data sync is disabled")
            return self._status.copy()

        if source is None:
            connectors = self._connectors
        elif source in self._connectors:
            connectors = {source: self._connectors[source]}
        else:
            self._log.warn(f"Cannot backfill {source.value}: no connector registered")
            return self._status.copy()

        window = timedelta(days=self._config.historical_data_days)
        self._log.info("Starting historical backfill", {"days": self._config.historical_data_days})
        return await self._guarded_pass(connectors, None, window)

    def get_status(self) -> SyncStatus:
        return self._status.copy()

    def update_config(self, config: SyncConfig) -> None:
        """Adopt a new configuration.

        An interval change while scheduled restarts the ticker without an
        immediate pass.
        """
        interval_changed = config.sync_interval_minutes != self._config.sync_interval_minutes
        self._config = copy.deepcopy(config)
        if interval_changed and self._ticker is not None:
            self._ticker.stop()
            self._start_ticker()
            self._status.next_sync_time = self._clock() + self._interval()
            self._log.info(
                "Sync interval changed",
                {"interval_minutes": self._config.sync_interval_minutes},
            )

    async def _guarded_pass(
        self,
        connectors: dict[WearableDataSource, WearableConnector],
        metric_types: Iterable[HealthMetricType] | None,
        window: timedelta,
    ) -> SyncStatus:
        if self._in_flight:
            self._log.warn("Sync already in progress")
            return self._status.copy()

        self._in_flight = True
        try:
            await self._run_pass(dict(connectors), metric_types, window)
        finally:
            self._in_flight = False
        return self._status.copy()

    async def _run_pass(
        self,
        connectors: dict[WearableDataSource, WearableConnector],
        metric_types: Iterable[HealthMetricType] | None,
        window: timedelta,
    ) -> None:
        if not connectors:
            self._log.warn("No connectors registered; nothing to sync")
            return

        stats = SyncStats()
        try:
            metrics = self._resolve_metrics(connectors, metric_types)
            stats.synced_by_metric_type = {metric: 0 for metric in metrics}
            end = self._clock()
            start = end - window
            self._log.info(
                "Starting data sync",
                {"sources": [s.value for s in connectors], "metrics": [m.value for m in metrics]},
            )

            for source, connector in connectors.items():
                supported = connector.get_supported_metrics()
                for metric in metrics:
                    if metric not in supported:
                        continue
                    points = await self._fetch(source, connector, metric, start, end, stats)
                    if points is not None:
                        self._process_points(source, metric, points, stats)

            if stats.total_synced > 0:
                try:
                    self._backup.create_backup_if_needed()
                except BackupError as exc:
                    self._log.error("Backup failed", exc)
                    stats.errors.append(
                        SyncError(
                            source=None,
                            code=BACKUP_ERROR,
                            message=str(exc),
                            timestamp=self._clock(),
                        )
                    )
        except Exception as exc:
            self._log.error("Unexpected error during sync", exc)
            stats.errors.append(
                SyncError(
                    source=None,
                    code=UNEXPECTED_ERROR,
                    message=f"{type(exc).__name__}: {exc}",
                    timestamp=self._clock(),
                )
            )

        finished = self._clock()
        self._status.last_sync_time = finished
        if self._status.is_running:
            self._status.next_sync_time = finished + self._interval()
        self._status.last_sync_stats = stats
        self._log.info(
            "Sync completed",
            {
                "total_synced": stats.total_synced,
                "errors": len(stats.errors),
                "warnings": len(stats.warnings),
                "anomalies": stats.anomalies_detected,
            },
        )

    def _resolve_metrics(
        self,
        connectors: dict[WearableDataSource, WearableConnector],
        metric_types: Iterable[HealthMetricType] | None,
    ) -> list[HealthMetricType]:
        if metric_types is not None:
            return list(dict.fromkeys(HealthMetricType(m) for m in metric_types))

        enabled = set(self._config.enabled_metrics)
        metrics: list[HealthMetricType] = []
        for connector in connectors.values():
            for metric in HealthMetricType:
                if metric in enabled and connector.supports(metric) and metric not in metrics:
                    metrics.append(metric)
        return metrics

    async def _fetch(
        self,
        source: WearableDataSource,
        connector: WearableConnector,
        metric: HealthMetricType,
        start: datetime,
        end: datetime,
        stats: SyncStats,
    ) -> list[HealthDataPoint] | None:
        try:
            return await asyncio.wait_for(
                connector.fetch_data(metric, start, end), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            message = f"Fetching {metric.value} from {source.value} timed out after {self._fetch_timeout:g}s"
            code = FETCH_TIMEOUT
        except Exception as exc:
            # One failing (source, metric) pair must not abort the pass
            message = f"Error syncing {metric.value} from {source.value}: {exc}"
            code = SYNC_ERROR

        self._log.error(message)
        stats.errors.append(
            SyncError(
                source=source,
                code=code,
                message=message,
                timestamp=self._clock(),
                metric_type=metric,
            )
        )
        return None

    def _process_points(
        self,
        source: WearableDataSource,
        metric: HealthMetricType,
        points: list[HealthDataPoint],
        stats: SyncStats,
    ) -> None:
        for point in points:
            valid, reason = self._validator.validate_with_reason(point)
            if not valid:
                stats.warnings.append(
                    SyncWarning(
                        source=source,
                        code=INVALID_DATA,
                        message=f"Invalid data point {point.id}: {reason}",
                        timestamp=self._clock(),
                        metric_type=metric,
                    )
                )
                continue

            normalized = self._normalizer.normalize(point)
            if self._detector.detect_anomaly(normalized):
                stats.anomalies_detected += 1
                stats.warnings.append(
                    SyncWarning(
                        source=source,
                        code=ANOMALY_DETECTED,
                        message=f"Anomaly detected in {metric.value}: {normalized.value} {normalized.unit}",
                        timestamp=self._clock(),
                        metric_type=metric,
                    )
                )

            self._store.add(normalized)
            stats.total_synced += 1
            stats.synced_by_metric_type[metric] = stats.synced_by_metric_type.get(metric, 0) + 1

        if points:
            self._log.debug(
                f"Processed {len(points)} {metric.value} points from {source.value}"
            )
