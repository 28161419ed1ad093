"""Load, validate, update and persist the HealthSync sync configuration.

The configuration is owned by a ``ConfigManager``.  Other components read
copies of it and never mutate it directly; changes go through
``ConfigManager.update_config()`` with a partial mapping.  Options not
present in the mapping keep their previous values.

The documented defaults live in ``sync_config.yaml`` alongside this
module and match the ``SyncConfig`` dataclass defaults.

Usage::

    from healthsync.wearables.config_loader import ConfigManager

    manager = ConfigManager({"sync_interval_minutes": 15})
    manager.update_config({"backup_config": {"frequency": "weekly"}})
    config = manager.get_config()
    config.backup_config.retention_period_days   # 30 (unchanged default)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import yaml

from healthsync.wearables.base import (
    BatteryOptimizationLevel,
    HealthMetricType,
    LogLevel,
    WearableDataSource,
)
from healthsync.wearables.normalizer import NormalizationRule

if TYPE_CHECKING:
    from healthsync.services.encryption import FieldEncryptor

logger = logging.getLogger("healthsync.wearables.config")

# Path to the YAML file sitting next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


class BackupFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class StorageLocation(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


@dataclass
class BackupConfig:
    """Backup policy."""

    enabled: bool = True
    frequency: BackupFrequency = BackupFrequency.DAILY
    retention_period_days: int = 30
    storage_location: StorageLocation = StorageLocation.LOCAL
    encrypt_backups: bool = True
    incremental_backups: bool = True


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        sync_interval_minutes:       Minutes between periodic sync passes.
        enabled_metrics:             Metrics synced when no explicit list is given.
        sync_historical_data:        Whether historical backfill is allowed.
        historical_data_days:        How far back a backfill reaches.
        anomaly_detection_threshold: z-score above which a point is flagged.
        data_normalization_rules:    Extra rules applied after the defaults.
        backup_config:               Backup policy.
        encrypt_data:                Encrypt persisted configuration documents.
        battery_optimization_level:  Admission policy for periodic passes.
        log_level:                   Minimum level kept by the sync logger.
        platform_specific_config:    Per-platform auth / scope settings.
    """

    sync_interval_minutes: int = 30
    enabled_metrics: list[HealthMetricType] = field(
        default_factory=lambda: list(HealthMetricType)
    )
    sync_historical_data: bool = True
    historical_data_days: int = 7
    anomaly_detection_threshold: float = 3.0
    data_normalization_rules: list[NormalizationRule] = field(default_factory=list)
    backup_config: BackupConfig = field(default_factory=BackupConfig)
    encrypt_data: bool = True
    battery_optimization_level: BatteryOptimizationLevel = BatteryOptimizationLevel.MEDIUM
    log_level: LogLevel = LogLevel.INFO
    platform_specific_config: dict[WearableDataSource, dict[str, Any]] = field(
        default_factory=dict
    )

    def platform_config(self, source: WearableDataSource) -> dict[str, Any]:
        """Return the settings for one platform (empty dict if none)."""
        return dict(self.platform_specific_config.get(source, {}))

    def to_dict(self) -> dict:
        """Return a YAML/JSON-serializable representation.

        Normalization rules with custom functions cannot be serialized and
        are left out.
        """
        rules = []
        for rule in self.data_normalization_rules:
            try:
                rules.append(rule.to_mapping())
            except ValueError:
                logger.warning(
                    "Skipping non-serializable normalization rule for %s",
                    rule.metric_type.value,
                )
        return {
            "sync_interval_minutes": self.sync_interval_minutes,
            "enabled_metrics": [m.value for m in self.enabled_metrics],
            "sync_historical_data": self.sync_historical_data,
            "historical_data_days": self.historical_data_days,
            "anomaly_detection_threshold": self.anomaly_detection_threshold,
            "data_normalization_rules": rules,
            "backup_config": {
                "enabled": self.backup_config.enabled,
                "frequency": self.backup_config.frequency.value,
                "retention_period_days": self.backup_config.retention_period_days,
                "storage_location": self.backup_config.storage_location.value,
                "encrypt_backups": self.backup_config.encrypt_backups,
                "incremental_backups": self.backup_config.incremental_backups,
            },
            "encrypt_data": self.encrypt_data,
            "battery_optimization_level": self.battery_optimization_level.value,
            "log_level": self.log_level.value,
            "platform_specific_config": {
                source.value: copy.deepcopy(cfg)
                for source, cfg in self.platform_specific_config.items()
            },
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when a configuration document or partial update is invalid."""


_KNOWN_KEYS = frozenset(f.name for f in fields(SyncConfig))
_BACKUP_KEYS = frozenset(f.name for f in fields(BackupConfig))


def _coerce_enum(enum_cls: type[Enum], value: Any, path: str, errors: list[str]) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errors.append(f"{path} must be one of [{allowed}], got {value!r}")
        return None


def _coerce_number(
    value: Any, path: str, errors: list[str], *, integer: bool, minimum: float
) -> Any:
    if isinstance(value, bool):
        errors.append(f"{path} must be a number, got {value!r}")
        return None
    try:
        number = int(value) if integer else float(value)
    except (TypeError, ValueError):
        errors.append(f"{path} must be a number, got {value!r}")
        return None
    if number < minimum:
        errors.append(f"{path} = {number} must be >= {minimum}")
    return number


def _coerce_bool(value: Any, path: str, errors: list[str]) -> Any:
    if not isinstance(value, bool):
        errors.append(f"{path} must be true or false, got {value!r}")
    return value


def _apply_backup_config(current: BackupConfig, raw: Any, errors: list[str]) -> BackupConfig:
    if isinstance(raw, BackupConfig):
        return copy.deepcopy(raw)
    if not isinstance(raw, Mapping):
        errors.append("backup_config must be a mapping")
        return current
    updated = copy.deepcopy(current)
    for key, value in raw.items():
        path = f"backup_config.{key}"
        if key not in _BACKUP_KEYS:
            errors.append(f"Unknown option '{path}'")
        elif key == "frequency":
            updated.frequency = _coerce_enum(BackupFrequency, value, path, errors)
        elif key == "storage_location":
            updated.storage_location = _coerce_enum(StorageLocation, value, path, errors)
        elif key == "retention_period_days":
            updated.retention_period_days = _coerce_number(
                value, path, errors, integer=True, minimum=1
            )
        else:
            setattr(updated, key, _coerce_bool(value, path, errors))
    return updated


def _apply_partial(current: SyncConfig, partial: Mapping[str, Any]) -> SyncConfig:
    """Return a new SyncConfig with ``partial`` applied on top of ``current``.

    Raises:
        ConfigValidationError: If any key is unknown or any value invalid.
            Nothing is applied in that case.
    """
    if not isinstance(partial, Mapping):
        raise ConfigValidationError("Configuration update must be a mapping")

    errors: list[str] = []
    updated = copy.deepcopy(current)

    for key, value in partial.items():
        if key not in _KNOWN_KEYS:
            errors.append(f"Unknown option '{key}'")
            continue

        if key == "sync_interval_minutes":
            updated.sync_interval_minutes = _coerce_number(
                value, key, errors, integer=True, minimum=1
            )
        elif key == "historical_data_days":
            updated.historical_data_days = _coerce_number(
                value, key, errors, integer=True, minimum=0
            )
        elif key == "anomaly_detection_threshold":
            updated.anomaly_detection_threshold = _coerce_number(
                value, key, errors, integer=False, minimum=0
            )
        elif key in ("sync_historical_data", "encrypt_data"):
            setattr(updated, key, _coerce_bool(value, key, errors))
        elif key == "battery_optimization_level":
            updated.battery_optimization_level = _coerce_enum(
                BatteryOptimizationLevel, value, key, errors
            )
        elif key == "log_level":
            updated.log_level = _coerce_enum(LogLevel, value, key, errors)
        elif key == "enabled_metrics":
            if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
                errors.append("enabled_metrics must be a list of metric types")
                continue
            metrics: list[HealthMetricType] = []
            for item in value:
                metric = _coerce_enum(HealthMetricType, item, key, errors)
                if metric is not None and metric not in metrics:
                    metrics.append(metric)
            updated.enabled_metrics = metrics
        elif key == "data_normalization_rules":
            if not isinstance(value, (list, tuple)):
                errors.append("data_normalization_rules must be a list")
                continue
            rules: list[NormalizationRule] = []
            for i, item in enumerate(value):
                try:
                    rules.append(
                        item
                        if isinstance(item, NormalizationRule)
                        else NormalizationRule.from_mapping(item)
                    )
                except (KeyError, TypeError, ValueError) as exc:
                    errors.append(f"data_normalization_rules[{i}]: {exc}")
            updated.data_normalization_rules = rules
        elif key == "backup_config":
            updated.backup_config = _apply_backup_config(updated.backup_config, value, errors)
        elif key == "platform_specific_config":
            if not isinstance(value, Mapping):
                errors.append("platform_specific_config must be a mapping")
                continue
            for platform, settings in value.items():
                source = _coerce_enum(
                    WearableDataSource, platform, "platform_specific_config", errors
                )
                if source is None:
                    continue
                if not isinstance(settings, Mapping):
                    errors.append(f"platform_specific_config.{source.value} must be a mapping")
                    continue
                updated.platform_specific_config[source] = copy.deepcopy(dict(settings))

    if errors:
        raise ConfigValidationError(
            f"Sync configuration has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )
    return updated


# ---------------------------------------------------------------------------
# YAML helpers
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed or not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return raw


def load_default_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the bundled default configuration document.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _DEFAULT_CONFIG_PATH
    config = _apply_partial(SyncConfig(), _load_yaml(target))
    logger.info("Loaded sync config from %s", target)
    return config


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Owns the process-wide SyncConfig.

    Args:
        initial:       Optional partial mapping applied over the defaults.
        encryptor:     Used to encrypt saved documents when ``encrypt_data`` is on.
        defaults_path: Defaults document; the bundled sync_config.yaml if omitted.
    """

    def __init__(
        self,
        initial: Mapping[str, Any] | None = None,
        encryptor: "FieldEncryptor | None" = None,
        defaults_path: Path | None = None,
    ) -> None:
        self._defaults = load_default_config(defaults_path)
        self._config = copy.deepcopy(self._defaults)
        self._encryptor = encryptor
        if initial:
            self.update_config(initial)

    def get_config(self) -> SyncConfig:
        """Return a deep copy of the current configuration."""
        return copy.deepcopy(self._config)

    def update_config(self, partial: Mapping[str, Any]) -> SyncConfig:
        """Apply a partial update; nested sections merge key-by-key.

        Raises:
            ConfigValidationError: If the update is invalid (nothing applied).
        """
        self._config = _apply_partial(self._config, partial)
        logger.debug("Sync config updated: %s", sorted(partial))
        return self.get_config()

    def reset_to_defaults(self) -> None:
        self._config = copy.deepcopy(self._defaults)

    def save_config(self, path: Path | str) -> None:
        """Write the configuration to a YAML file.

        When ``encrypt_data`` is on and an encryptor is configured, the
        document body is stored as a single Fernet token.
        """
        target = Path(path)
        document: dict[str, Any] = self._config.to_dict()
        if self._config.encrypt_data:
            if self._encryptor is not None:
                document = {"encrypted": self._encryptor.encrypt(document)}
            else:
                logger.warning(
                    "encrypt_data is enabled but no encryption key is configured; "
                    "saving %s in plain text",
                    target,
                )
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as fh:
            yaml.safe_dump(document, fh, sort_keys=False)
        logger.info("Saved sync config to %s", target)

    def load_config(self, path: Path | str) -> bool:
        """Load a document written by ``save_config`` and apply it.

        Returns:
            True if a document was applied, False if the file does not exist.

        Raises:
            ConfigValidationError: If the document is malformed, cannot be
                decrypted, or contains invalid options.
        """
        target = Path(path)
        try:
            raw = _load_yaml(target)
        except FileNotFoundError:
            logger.warning("No saved sync config at %s; keeping current settings", target)
            return False

        if set(raw) == {"encrypted"}:
            if self._encryptor is None:
                raise ConfigValidationError(
                    f"{target} is encrypted but no encryption key is configured"
                )
            from healthsync.services.encryption import EncryptionError

            try:
                raw = self._encryptor.decrypt(raw["encrypted"])
            except EncryptionError as exc:
                raise ConfigValidationError(f"Could not decrypt {target}: {exc}") from exc

        self.update_config(raw)
        logger.info("Loaded sync config from %s", target)
        return True
