"""Apple HealthKit connector (export file path).

Apple does not provide a server-side API.  HealthKit data reaches the
service as the ``export.xml`` file produced by the Health app
(Profile → Export All Health Data), either uploaded by the user or synced
from a companion iOS app.  This connector reads that file.

There is no OAuth flow.  ``authorize()`` grants the configured read
permissions locally; ``initialize()`` returns False when no export file is
available, which is how "HealthKit not available on this runtime" shows
up here.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping
from xml.etree import ElementTree as ET

from healthsync.wearables.base import (
    Clock,
    ConnectorNotInitializedError,
    HealthDataPoint,
    HealthMetricType,
    NotAuthorizedError,
    UnsupportedMetricError,
    WearableConnector,
    WearableDataSource,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("healthsync.wearables.apple_health")

_HK_SLEEP_ANALYSIS = "HKCategoryTypeIdentifierSleepAnalysis"
_HK_SYSTOLIC = "HKQuantityTypeIdentifierBloodPressureSystolic"
_HK_DIASTOLIC = "HKQuantityTypeIdentifierBloodPressureDiastolic"

# Single-record metrics: HK record type → (metric, unit override or None)
_HK_RECORD_TYPES: dict[str, tuple[HealthMetricType, str | None]] = {
    "HKQuantityTypeIdentifierStepCount": (HealthMetricType.STEPS, "count"),
    "HKQuantityTypeIdentifierDistanceWalkingRunning": (HealthMetricType.DISTANCE, None),
    "HKQuantityTypeIdentifierAppleExerciseTime": (HealthMetricType.ACTIVE_MINUTES, "min"),
    "HKQuantityTypeIdentifierActiveEnergyBurned": (HealthMetricType.CALORIES_BURNED, "kcal"),
    "HKQuantityTypeIdentifierFlightsClimbed": (HealthMetricType.FLOORS_CLIMBED, "count"),
    "HKQuantityTypeIdentifierHeartRate": (HealthMetricType.HEART_RATE, "bpm"),
    "HKQuantityTypeIdentifierOxygenSaturation": (HealthMetricType.BLOOD_OXYGEN, "%"),
    "HKQuantityTypeIdentifierRespiratoryRate": (HealthMetricType.RESPIRATORY_RATE, "breaths/min"),
    "HKQuantityTypeIdentifierBodyTemperature": (HealthMetricType.BODY_TEMPERATURE, None),
    "HKQuantityTypeIdentifierBodyMass": (HealthMetricType.WEIGHT, None),
    "HKQuantityTypeIdentifierBodyFatPercentage": (HealthMetricType.BODY_FAT, "%"),
    "HKQuantityTypeIdentifierBodyMassIndex": (HealthMetricType.BMI, "kg/m2"),
    "HKQuantityTypeIdentifierDietaryWater": (HealthMetricType.WATER_INTAKE, "ml"),
    "HKDataTypeIdentifierElectrocardiogram": (HealthMetricType.ECG, None),
}

_METRIC_RECORD_TYPE: dict[HealthMetricType, str] = {
    metric: hk_type for hk_type, (metric, _) in _HK_RECORD_TYPES.items()
}

# HealthKit stores these as a fraction (0.97), the canonical unit is percent
_FRACTION_METRICS = frozenset({HealthMetricType.BLOOD_OXYGEN, HealthMetricType.BODY_FAT})

# HealthKit unit strings → canonical unit strings understood by the normalizer
_UNIT_MAP: dict[str, str] = {
    "degC": "C",
    "degF": "F",
    "mL": "ml",
    "Cal": "kcal",
    "count/min": "bpm",
}

# Sleep stage values from HealthKit
_SLEEP_STAGE_MAP: dict[str, str] = {
    "HKCategoryValueSleepAnalysisAsleepUnspecified": "light",
    "HKCategoryValueSleepAnalysisAsleep": "light",
    "HKCategoryValueSleepAnalysisAsleepCore": "light",
    "HKCategoryValueSleepAnalysisAsleepDeep": "deep",
    "HKCategoryValueSleepAnalysisAsleepREM": "rem",
    "HKCategoryValueSleepAnalysisAwake": "awake",
}

SUPPORTED_METRICS = frozenset(
    {
        HealthMetricType.STEPS,
        HealthMetricType.DISTANCE,
        HealthMetricType.ACTIVE_MINUTES,
        HealthMetricType.CALORIES_BURNED,
        HealthMetricType.FLOORS_CLIMBED,
        HealthMetricType.HEART_RATE,
        HealthMetricType.BLOOD_PRESSURE,
        HealthMetricType.BLOOD_OXYGEN,
        HealthMetricType.RESPIRATORY_RATE,
        HealthMetricType.BODY_TEMPERATURE,
        HealthMetricType.SLEEP_SESSION,
        HealthMetricType.SLEEP_STAGES,
        HealthMetricType.WEIGHT,
        HealthMetricType.BODY_FAT,
        HealthMetricType.BMI,
        HealthMetricType.WATER_INTAKE,
        HealthMetricType.ECG,
    }
)

DEFAULT_READ_PERMISSIONS = tuple(m for m in HealthMetricType if m in SUPPORTED_METRICS)


def parse_hk_date(value: str | None) -> datetime | None:
    """Parse HealthKit export dates such as ``2024-01-15 08:30:00 -0800``."""
    if not value:
        return None
    try:
        return parse_timestamp(datetime.strptime(value, "%Y-%m-%d %H:%M:%S %z"))
    except ValueError:
        return parse_timestamp(value)


def _to_number(value: str | None) -> float | int | None:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


def _metrics(values: Iterable[Any]) -> list[HealthMetricType]:
    metrics = []
    for value in values:
        metric = HealthMetricType(value)
        if metric in SUPPORTED_METRICS and metric not in metrics:
            metrics.append(metric)
    return metrics


class AppleHealthConnector(WearableConnector):
    """Apple Health connector reading a HealthKit XML export.

    Args:
        auth_config: ``export_path`` plus the optional platform settings
                     ``permissions`` (``{"read": [...], "write": [...]}``)
                     and ``background_delivery`` (bool or metric list).
        export_path: Fallback export location when the auth config has none.
        clock:       Time source for sync timestamps.
    """

    SOURCE = WearableDataSource.APPLE_HEALTH
    DISPLAY_NAME = "Apple Health"
    SUPPORTED_METRICS = SUPPORTED_METRICS

    def __init__(
        self,
        auth_config: Mapping[str, Any] | None = None,
        *,
        export_path: Path | str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        cfg = dict(auth_config or {})
        path = cfg.get("export_path") or export_path
        self._export_path = Path(path) if path else None
        permissions = cfg.get("permissions") or {}
        self._requested_read = _metrics(permissions.get("read", DEFAULT_READ_PERMISSIONS))
        self._requested_write = _metrics(permissions.get("write", ()))
        self._background_request = cfg.get("background_delivery", False)
        self.user_id = str(cfg.get("user_id", "default"))
        self._clock = clock

        self._initialized = False
        self._granted_read: frozenset[HealthMetricType] = frozenset()
        self._background: set[HealthMetricType] = set()
        self._records: dict[str, list[dict[str, str]]] = {}
        self._loaded_mtime: float | None = None

    @property
    def granted_permissions(self) -> frozenset[HealthMetricType]:
        return self._granted_read

    @property
    def background_delivery_metrics(self) -> frozenset[HealthMetricType]:
        return frozenset(self._background)

    def get_supported_metrics(self) -> frozenset[HealthMetricType]:
        """Metrics this connector can fetch: the granted ones once authorized."""
        return self._granted_read or SUPPORTED_METRICS

    # ------------------------------------------------------------------
    # WearableConnector interface
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Load the export file.  Returns False if it is missing or unreadable."""
        if self._export_path is None or not self._export_path.is_file():
            logger.info("Apple Health: no export available at %s", self._export_path)
            return False
        try:
            await self._load()
        except (OSError, ValueError) as exc:
            logger.error("Apple Health: cannot read export %s: %s", self._export_path, exc)
            return False
        self._initialized = True
        return True

    async def authorize(self) -> bool:
        """Grant the configured read permissions.

        Returns False if ``initialize()`` did not succeed.
        """
        if not self._initialized:
            logger.error("Apple Health: authorize called before initialize")
            return False
        self._granted_read = frozenset(self._requested_read)
        if self._requested_write:
            logger.debug(
                "Apple Health: write permissions requested but writes are not supported: %s",
                [m.value for m in self._requested_write],
            )

        if self._background_request is True:
            self.enable_background_delivery(self._granted_read)
        elif self._background_request:
            self.enable_background_delivery(_metrics(self._background_request))

        logger.info(
            "Apple Health: granted read access to %d metric types", len(self._granted_read)
        )
        return bool(self._granted_read)

    async def is_authorized(self) -> bool:
        return self._initialized and bool(self._granted_read)

    async def revoke_authorization(self) -> bool:
        """Forget the granted permissions.

        HealthKit offers no programmatic revoke.  This only resets local
        tracking; the user must remove access in Settings > Privacy > Health
        for the revoke to take effect on the device.
        """
        logger.warning(
            "Apple Health: permissions cleared locally only; the user must also "
            "revoke access in Settings > Privacy > Health"
        )
        self._granted_read = frozenset()
        self._background.clear()
        return True

    async def fetch_data(
        self,
        metric_type: HealthMetricType,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[HealthDataPoint]:
        if not self._initialized:
            raise ConnectorNotInitializedError("Apple Health connector not initialized")
        if not self._granted_read:
            raise NotAuthorizedError("Apple Health is not authorized")
        if metric_type not in SUPPORTED_METRICS:
            raise UnsupportedMetricError(f"Apple Health does not support {metric_type.value}")
        if metric_type not in self._granted_read:
            raise NotAuthorizedError(
                f"Apple Health read permission not granted for {metric_type.value}"
            )

        await self._reload_if_changed()
        end = end_time or self._clock()
        start = start_time or end - self.DEFAULT_FETCH_WINDOW
        synced_at = self._clock()

        if metric_type is HealthMetricType.BLOOD_PRESSURE:
            points = self._blood_pressure_points(start, end, synced_at)
        elif metric_type in (HealthMetricType.SLEEP_SESSION, HealthMetricType.SLEEP_STAGES):
            points = self._sleep_points(metric_type, start, end, synced_at)
        else:
            points = self._record_points(metric_type, start, end, synced_at)

        logger.debug("Apple Health: %d %s points in window", len(points), metric_type.value)
        return points

    # ------------------------------------------------------------------
    # Background delivery
    # ------------------------------------------------------------------

    def enable_background_delivery(self, metric_types: Iterable[HealthMetricType]) -> bool:
        """Track metrics the companion app should push in the background.

        Raises:
            NotAuthorizedError: If no read permissions are granted.
        """
        if not self._granted_read:
            raise NotAuthorizedError("Apple Health is not authorized")
        enabled = [m for m in metric_types if m in self._granted_read]
        self._background.update(enabled)
        logger.info("Apple Health: background delivery on for %s", [m.value for m in enabled])
        return bool(enabled)

    def disable_background_delivery(
        self, metric_types: Iterable[HealthMetricType] | None = None
    ) -> None:
        if metric_types is None:
            self._background.clear()
        else:
            self._background.difference_update(metric_types)

    # ------------------------------------------------------------------
    # Export parsing
    # ------------------------------------------------------------------

    async def _load(self) -> None:
        assert self._export_path is not None
        mtime = self._export_path.stat().st_mtime
        self._records = await asyncio.to_thread(self._parse_export, self._export_path)
        self._loaded_mtime = mtime

    async def _reload_if_changed(self) -> None:
        if self._export_path is None:
            return
        try:
            mtime = self._export_path.stat().st_mtime
        except OSError:
            # Export removed after initialize; keep serving what was loaded
            return
        if mtime != self._loaded_mtime:
            logger.info("Apple Health: export changed, reloading")
            await self._load()

    @staticmethod
    def _parse_export(path: Path) -> dict[str, list[dict[str, str]]]:
        """Group ``Record`` element attributes by HK type.

        Raises:
            ValueError: If the XML is malformed.
        """
        try:
            root = ET.parse(path).getroot()
        except ET.ParseError as exc:
            raise ValueError(f"Invalid Apple Health XML: {exc}") from exc

        records: dict[str, list[dict[str, str]]] = defaultdict(list)
        for record in root.iter("Record"):
            rec_type = record.get("type", "")
            if rec_type:
                records[rec_type].append(dict(record.attrib))

        logger.info(
            "Apple Health XML: parsed %d records of %d types",
            sum(len(r) for r in records.values()),
            len(records),
        )
        return dict(records)

    def _in_window(
        self, record: dict[str, str], start: datetime, end: datetime
    ) -> datetime | None:
        started = parse_hk_date(record.get("startDate"))
        if started is None or not (start <= started <= end):
            return None
        return started

    def _record_points(
        self, metric_type: HealthMetricType, start: datetime, end: datetime, synced_at: datetime
    ) -> list[HealthDataPoint]:
        hk_type = _METRIC_RECORD_TYPE[metric_type]
        _, unit_override = _HK_RECORD_TYPES[hk_type]

        points = []
        for record in self._records.get(hk_type, []):
            started = self._in_window(record, start, end)
            if started is None:
                continue
            value = _to_number(record.get("value"))
            if value is None:
                continue
            raw_unit = record.get("unit", "")
            if metric_type in _FRACTION_METRICS and value <= 1:
                value = round(value * 100, 2)
            unit = unit_override or _UNIT_MAP.get(raw_unit, raw_unit)
            points.append(self._point_from_record(metric_type, record, started, value, unit, synced_at))
        return points

    def _blood_pressure_points(
        self, start: datetime, end: datetime, synced_at: datetime
    ) -> list[HealthDataPoint]:
        diastolic_by_start = {
            r.get("startDate"): r for r in self._records.get(_HK_DIASTOLIC, [])
        }
        points = []
        for systolic in self._records.get(_HK_SYSTOLIC, []):
            diastolic = diastolic_by_start.get(systolic.get("startDate"))
            if diastolic is None:
                continue
            started = self._in_window(systolic, start, end)
            sys_value = _to_number(systolic.get("value"))
            dia_value = _to_number(diastolic.get("value"))
            if started is None or sys_value is None or dia_value is None:
                continue
            points.append(
                self._point_from_record(
                    HealthMetricType.BLOOD_PRESSURE,
                    systolic,
                    started,
                    {"systolic": sys_value, "diastolic": dia_value},
                    "mmHg",
                    synced_at,
                )
            )
        return points

    def _sleep_points(
        self, metric_type: HealthMetricType, start: datetime, end: datetime, synced_at: datetime
    ) -> list[HealthDataPoint]:
        # One point per night, keyed by the wake-up date
        nights: dict[str, dict[str, Any]] = {}
        for record in self._records.get(_HK_SLEEP_ANALYSIS, []):
            stage = _SLEEP_STAGE_MAP.get(record.get("value", ""))
            started = self._in_window(record, start, end)
            ended = parse_hk_date(record.get("endDate"))
            if stage is None or started is None or ended is None or ended <= started:
                continue
            night = nights.setdefault(
                ended.date().isoformat(), {"start": started, "stages": defaultdict(float)}
            )
            night["start"] = min(night["start"], started)
            night["stages"][stage] += (ended - started).total_seconds() / 60

        points = []
        for wake_date, night in sorted(nights.items()):
            stages = {k: round(v, 1) for k, v in night["stages"].items()}
            if metric_type is HealthMetricType.SLEEP_SESSION:
                value: Any = round(sum(v for k, v in stages.items() if k != "awake"), 1)
            else:
                value = stages
            points.append(
                self._make_point(
                    metric_type,
                    night["start"],
                    value,
                    "min",
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                    metadata={"wake_date": wake_date},
                )
            )
        return points

    def _point_from_record(
        self,
        metric_type: HealthMetricType,
        record: dict[str, str],
        started: datetime,
        value: Any,
        unit: str,
        synced_at: datetime,
    ) -> HealthDataPoint:
        source_name = record.get("sourceName")
        return self._make_point(
            metric_type,
            started,
            value,
            unit,
            user_id=self.user_id,
            sync_timestamp=synced_at,
            source_device_id=source_name,
            metadata={"hk_type": record.get("type"), "end": record.get("endDate")},
            sample_key=(
                hashlib.sha256(source_name.encode()).hexdigest()[:8] if source_name else None
            ),
        )
