"""WearableIntegration: the single entry point for callers.

Wires together configuration, logging, validation, normalization, anomaly
detection, storage, backups, battery gating and the sync manager, and
exposes the operations the UI needs.

Usage::

    integration = WearableIntegration({"sync_interval_minutes": 15})
    await integration.initialize_connector("fitbit", {"auth_code": code})
    await integration.start_sync()
    status = integration.get_sync_status()
    await integration.aclose()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import httpx

from healthsync.config import Settings, get_settings
from healthsync.services.backup_storage import (
    BackupInfo,
    BackupStorage,
    LocalBackupStorage,
    S3BackupStorage,
    build_s3_client,
)
from healthsync.services.encryption import FieldEncryptor
from healthsync.wearables.adapters import create_connector
from healthsync.wearables.adapters.oauth import OAuthConnector
from healthsync.wearables.anomaly_detector import AnomalyDetector
from healthsync.wearables.backup import BackupManager
from healthsync.wearables.base import (
    Clock,
    HealthMetricType,
    SyncStatus,
    UnsupportedPlatformError,
    WearableConnector,
    WearableDataSource,
    utc_now,
)
from healthsync.wearables.battery import BatteryOptimizer, BatteryProvider
from healthsync.wearables.config_loader import ConfigManager, StorageLocation, SyncConfig
from healthsync.wearables.normalizer import DataNormalizer
from healthsync.wearables.store import HealthDataStore
from healthsync.wearables.sync.manager import DataSyncManager
from healthsync.wearables.sync_logger import LogEntry, SyncLogger
from healthsync.wearables.validator import DataValidator

logger = logging.getLogger("healthsync.wearables.integration")

ConnectorFactory = Callable[..., WearableConnector]

_OAUTH_PLATFORMS = frozenset({WearableDataSource.GOOGLE_FIT, WearableDataSource.FITBIT})


class WearableIntegration:
    """Facade over the wearable sync engine.

    Args:
        config:            Partial sync configuration applied over the defaults.
        settings:          Process settings (credentials, storage, timeouts).
        clock:             Time source shared by every component.
        battery_provider:  Battery source for periodic admission control.
        storages:          Backup backends by location; built from settings if omitted.
        encryptor:         Fernet encryptor for backups and saved config.
        http_client:       Shared httpx client for OAuth connectors.
        connector_factory: Builds connectors; defaults to ``create_connector``.
    """

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        battery_provider: BatteryProvider | None = None,
        storages: Mapping[StorageLocation, BackupStorage] | None = None,
        encryptor: FieldEncryptor | None = None,
        http_client: httpx.AsyncClient | None = None,
        connector_factory: ConnectorFactory = create_connector,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._http_client = http_client
        self._connector_factory = connector_factory
        self._encryptor = encryptor or self._build_encryptor()

        self.config_manager = ConfigManager(config, encryptor=self._encryptor)
        cfg = self.config_manager.get_config()

        self.logger = SyncLogger(level=cfg.log_level, clock=clock)
        self.validator = DataValidator(clock=clock)
        self.normalizer = DataNormalizer(cfg.data_normalization_rules)
        self.anomaly_detector = AnomalyDetector(threshold=cfg.anomaly_detection_threshold)
        self.store = HealthDataStore()
        self.backup_manager = BackupManager(
            cfg.backup_config,
            self.store,
            storages if storages is not None else self._build_storages(),
            encryptor=self._encryptor,
            clock=clock,
        )
        self.battery = BatteryOptimizer(cfg.battery_optimization_level, battery_provider)
        self.sync_manager = DataSyncManager(
            cfg,
            self.logger,
            self.validator,
            self.normalizer,
            self.anomaly_detector,
            self.store,
            self.backup_manager,
            self.battery,
            clock=clock,
            fetch_timeout_seconds=self._settings.sync_fetch_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Connectors
    # ------------------------------------------------------------------

    async def initialize_connector(
        self, platform: WearableDataSource | str, auth_config: Mapping[str, Any] | None = None
    ) -> bool:
        """Create, initialize, authorize and register a platform connector.

        Returns:
            True on success.  Every failure is logged and reported as False.
        """
        try:
            source = WearableDataSource(platform)
        except ValueError:
            self.logger.error(f"Unsupported platform: {platform}")
            return False

        try:
            connector = self._build_connector(source, auth_config)
            if not await connector.initialize():
                self.logger.error(f"Failed to initialize connector for {source.value}")
                await connector.aclose()
                return False
            if not await connector.authorize():
                self.logger.error(f"Failed to authorize connector for {source.value}")
                await connector.aclose()
                return False
        except Exception as exc:
            # Connector setup failures are reported to the caller as False
            self.logger.error(f"Error initializing connector for {source.value}", exc)
            return False

        previous = self.sync_manager.unregister_connector(source)
        if previous is not None:
            await previous.aclose()
        self.sync_manager.register_connector(source, connector)
        self.logger.info(f"Successfully initialized connector for {source.value}")
        return True

    async def revoke_authorization(self, platform: WearableDataSource | str) -> bool:
        """Revoke a platform's authorization and unregister its connector."""
        try:
            source = WearableDataSource(platform)
        except ValueError:
            self.logger.warn(f"Unsupported platform: {platform}")
            return False

        connector = self.sync_manager.get_connector(source)
        if connector is None:
            self.logger.warn(f"No connector found for platform {source.value}")
            return False

        try:
            revoked = await connector.revoke_authorization()
        except Exception as exc:
            self.logger.error(f"Error revoking authorization for {source.value}", exc)
            return False
        if not revoked:
            self.logger.warn(f"Platform {source.value} refused to revoke authorization")
            return False

        self.sync_manager.unregister_connector(source)
        await connector.aclose()
        self.logger.info(f"Revoked authorization for {source.value}")
        return True

    def authorization_url(self, platform: WearableDataSource | str, state: str) -> str:
        """Build the OAuth consent URL for a REST platform.

        Raises:
            UnsupportedPlatformError: For unknown platforms or platforms
                without an OAuth consent step.
        """
        try:
            source = WearableDataSource(platform)
        except ValueError as exc:
            raise UnsupportedPlatformError(f"Unsupported platform: {platform}") from exc
        if source not in _OAUTH_PLATFORMS:
            raise UnsupportedPlatformError(f"{source.value} has no OAuth consent step")
        connector = self._build_connector(source, None)
        if not isinstance(connector, OAuthConnector):
            raise UnsupportedPlatformError(
                f"{source.value} connector does not support OAuth consent"
            )
        return connector.authorization_url(state)

    def get_connected_platforms(self) -> list[WearableDataSource]:
        return list(self.sync_manager.connectors)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def start_sync(self) -> bool:
        """Start periodic sync.  Returns False when no connector is registered."""
        if not self.sync_manager.connectors:
            self.logger.warn("Cannot start sync: no connectors initialized")
            return False
        await self.sync_manager.start_sync()
        return True

    def stop_sync(self) -> None:
        self.sync_manager.stop_sync()

    async def sync_now(
        self, metric_types: Iterable[HealthMetricType] | None = None
    ) -> SyncStatus:
        return await self.sync_manager.sync_now(metric_types)

    async def backfill_history(self, platform: WearableDataSource | str | None = None) -> SyncStatus:
        source = WearableDataSource(platform) if platform is not None else None
        return await self.sync_manager.backfill_history(source)

    def get_sync_status(self) -> SyncStatus:
        return self.sync_manager.get_status()

    def get_sync_logs(self, limit: int | None = None) -> list[LogEntry]:
        return self.logger.get_logs(limit)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, partial: Mapping[str, Any]) -> SyncConfig:
        """Validate and apply a partial update, then push it to every component.

        Raises:
            ConfigValidationError: If the update is invalid (nothing applied).
        """
        previous = self.config_manager.get_config()
        config = self.config_manager.update_config(partial)
        self._apply_config(config, previous)
        self.logger.info("Configuration updated", {"keys": sorted(partial)})
        return config

    def get_config(self) -> SyncConfig:
        return self.config_manager.get_config()

    def save_config(self, path: Path | str) -> None:
        self.config_manager.save_config(path)

    def load_config(self, path: Path | str) -> bool:
        """Load a saved configuration document and push it to every component.

        Returns:
            False if the file does not exist.
        """
        previous = self.config_manager.get_config()
        if not self.config_manager.load_config(path):
            return False
        self._apply_config(self.config_manager.get_config(), previous)
        return True

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupInfo]:
        return self.backup_manager.list_backups()

    def restore_from_backup(self, backup_id: str) -> int:
        count = self.backup_manager.restore_from_backup(backup_id)
        self.logger.info(f"Restored {count} data points from backup {backup_id}")
        return count

    async def aclose(self) -> None:
        """Stop syncing and release every connector's network resources."""
        self.stop_sync()
        for source, connector in self.sync_manager.connectors.items():
            await connector.aclose()
            logger.debug("Closed connector %s", source.value)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_config(self, config: SyncConfig, previous: SyncConfig) -> None:
        self.anomaly_detector.update_threshold(config.anomaly_detection_threshold)
        self.backup_manager.update_config(config.backup_config)
        self.battery.update_optimization_level(config.battery_optimization_level)
        self.logger.set_log_level(config.log_level)
        if config.data_normalization_rules != previous.data_normalization_rules:
            self.normalizer.reset_to_defaults()
            for rule in config.data_normalization_rules:
                self.normalizer.add_normalization_rule(rule)
        self.sync_manager.update_config(config)

    def _build_connector(
        self, source: WearableDataSource, auth_config: Mapping[str, Any] | None
    ) -> WearableConnector:
        merged = self._platform_defaults(source)
        merged.update(self.config_manager.get_config().platform_config(source))
        merged.update(auth_config or {})

        kwargs: dict[str, Any] = {"clock": self._clock}
        if source in _OAUTH_PLATFORMS and self._http_client is not None:
            kwargs["http_client"] = self._http_client
        return self._connector_factory(source, merged, **kwargs)

    def _platform_defaults(self, source: WearableDataSource) -> dict[str, Any]:
        s = self._settings
        if source is WearableDataSource.GOOGLE_FIT:
            values = {
                "client_id": s.google_fit_client_id,
                "client_secret": s.google_fit_client_secret,
                "redirect_uri": s.google_fit_redirect_uri,
            }
        elif source is WearableDataSource.FITBIT:
            values = {
                "client_id": s.fitbit_client_id,
                "client_secret": s.fitbit_client_secret,
                "redirect_uri": s.fitbit_redirect_uri,
            }
        else:
            values = {"export_path": s.apple_health_export_path}
        return {k: v for k, v in values.items() if v}

    def _build_encryptor(self) -> FieldEncryptor:
        if self._settings.backup_encryption_key:
            return FieldEncryptor(self._settings.backup_encryption_key)
        logger.warning(
            "BACKUP_ENCRYPTION_KEY is not set; using an ephemeral key. "
            "Encrypted backups will not be restorable after a restart."
        )
        return FieldEncryptor(FieldEncryptor.generate_key())

    def _build_storages(self) -> dict[StorageLocation, BackupStorage]:
        s = self._settings
        storages: dict[StorageLocation, BackupStorage] = {
            StorageLocation.LOCAL: LocalBackupStorage(s.backup_dir),
        }
        if s.backup_bucket:
            storages[StorageLocation.CLOUD] = S3BackupStorage(
                s.backup_bucket, build_s3_client(s), prefix=s.backup_s3_prefix
            )
        return storages
