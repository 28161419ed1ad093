"""Simulated connector producing plausible synthetic data.

Used for demos and local development without platform credentials.
Select it with ``auth_config={"simulate": True}`` for any platform; the
connector then reports that platform's source and supported metrics.

Generated series:
    steps             hourly,        0-2000 count
    heart_rate        every 10 min,  60-100 bpm
    sleep_session     daily,         300-480 min
    anything else     hourly,        0-100 count  (plus a few structured
                                                   and body metrics with
                                                   realistic ranges)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from healthsync.wearables.base import (
    Clock,
    ConnectorNotInitializedError,
    HealthDataPoint,
    HealthMetricType,
    NotAuthorizedError,
    UnsupportedMetricError,
    WearableConnector,
    WearableDataSource,
    utc_now,
)

logger = logging.getLogger("healthsync.wearables.simulated")


@dataclass(frozen=True)
class _Series:
    interval: timedelta
    low: float
    high: float
    unit: str
    integer: bool = True


_DEFAULT_SERIES = _Series(timedelta(hours=1), 0, 100, "count")

_SERIES: dict[HealthMetricType, _Series] = {
    HealthMetricType.STEPS: _Series(timedelta(hours=1), 0, 2000, "count"),
    HealthMetricType.HEART_RATE: _Series(timedelta(minutes=10), 60, 100, "bpm"),
    HealthMetricType.SLEEP_SESSION: _Series(timedelta(days=1), 300, 480, "min"),
    HealthMetricType.BLOOD_OXYGEN: _Series(timedelta(hours=1), 94, 99, "%"),
    HealthMetricType.WEIGHT: _Series(timedelta(days=1), 60, 90, "kg", integer=False),
    HealthMetricType.BODY_TEMPERATURE: _Series(timedelta(hours=6), 36.1, 37.2, "C", integer=False),
}

_STRUCTURED_INTERVALS: dict[HealthMetricType, timedelta] = {
    HealthMetricType.BLOOD_PRESSURE: timedelta(hours=6),
    HealthMetricType.SLEEP_STAGES: timedelta(days=1),
}


def _align(moment: datetime, interval: timedelta) -> datetime:
    """Round ``moment`` up to the next multiple of ``interval`` since the epoch."""
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    steps = -((epoch - moment) // interval)
    return epoch + steps * interval


class SimulatedConnector(WearableConnector):
    """Deterministic synthetic data for one platform.

    Args:
        source:      Platform to impersonate.
        metrics:     Metrics to report as supported.
        auth_config: ``user_id`` and an optional integer ``seed``.
        rng:         Random source; overrides ``seed``.
        clock:       Time source.
    """

    DISPLAY_NAME = "Simulated"

    def __init__(
        self,
        source: WearableDataSource,
        metrics: frozenset[HealthMetricType],
        auth_config: Mapping[str, Any] | None = None,
        *,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
    ) -> None:
        cfg = dict(auth_config or {})
        self.SOURCE = WearableDataSource(source)
        self.DISPLAY_NAME = f"Simulated {self.SOURCE.value}"
        self._metrics = frozenset(metrics)
        self._rng = rng or random.Random(cfg.get("seed"))
        self._clock = clock
        self.user_id = str(cfg.get("user_id", "default"))
        self._initialized = False
        self._authorized = False

    def get_supported_metrics(self) -> frozenset[HealthMetricType]:
        return self._metrics

    async def initialize(self) -> bool:
        self._initialized = True
        return True

    async def authorize(self) -> bool:
        if not self._initialized:
            logger.error("%s: authorize called before initialize", self.DISPLAY_NAME)
            return False
        self._authorized = True
        return True

    async def is_authorized(self) -> bool:
        return self._initialized and self._authorized

    async def revoke_authorization(self) -> bool:
        self._authorized = False
        return True

    async def fetch_data(
        self,
        metric_type: HealthMetricType,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[HealthDataPoint]:
        if not self._initialized:
            raise ConnectorNotInitializedError(f"{self.DISPLAY_NAME} connector not initialized")
        if not self._authorized:
            raise NotAuthorizedError(f"{self.DISPLAY_NAME} is not authorized")
        if metric_type not in self._metrics:
            raise UnsupportedMetricError(f"{self.DISPLAY_NAME} does not support {metric_type.value}")

        end = end_time or self._clock()
        start = start_time or end - self.DEFAULT_FETCH_WINDOW
        synced_at = self._clock()

        if metric_type in _STRUCTURED_INTERVALS:
            interval = _STRUCTURED_INTERVALS[metric_type]
        else:
            interval = _SERIES.get(metric_type, _DEFAULT_SERIES).interval

        points = []
        moment = _align(start, interval)
        while moment <= end:
            value, unit = self._sample(metric_type)
            points.append(
                self._make_point(
                    metric_type,
                    moment,
                    value,
                    unit,
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                    source_device_id="simulated",
                    metadata={"simulated": True},
                )
            )
            moment += interval

        logger.debug("%s: generated %d %s points", self.DISPLAY_NAME, len(points), metric_type.value)
        return points

    def _sample(self, metric_type: HealthMetricType) -> tuple[Any, str]:
        if metric_type is HealthMetricType.BLOOD_PRESSURE:
            return {
                "systolic": self._rng.randint(105, 135),
                "diastolic": self._rng.randint(65, 85),
            }, "mmHg"
        if metric_type is HealthMetricType.SLEEP_STAGES:
            return {
                "deep": self._rng.randint(40, 110),
                "light": self._rng.randint(180, 280),
                "rem": self._rng.randint(60, 120),
                "awake": self._rng.randint(5, 40),
            }, "min"

        series = _SERIES.get(metric_type, _DEFAULT_SERIES)
        if series.integer:
            return self._rng.randint(int(series.low), int(series.high)), series.unit
        return round(self._rng.uniform(series.low, series.high), 1), series.unit
