"""Statistical anomaly detection over a rolling per-metric history.

Detection for a new numeric point:

1. Hard bound: outside the metric's physiological range → anomalous
   (the point is not added to history).
2. Warm-up: fewer than ``min_history`` values seen → accepted, recorded.
3. z-score: |value − mean| / population stddev of the window, anomalous
   when above the threshold.  The point is then recorded.

The window keeps the last ``window_size`` values per metric.  Structured
values (blood pressure, sleep stages) are never flagged.
"""

from __future__ import annotations

import logging
import math
import statistics
from collections import deque

from healthsync.wearables.base import HealthDataPoint, HealthMetricType

logger = logging.getLogger("healthsync.wearables.anomaly")

DEFAULT_THRESHOLD = 3.0
DEFAULT_WINDOW_SIZE = 100
DEFAULT_MIN_HISTORY = 10

# Expected value ranges in canonical units
METRIC_RANGES: dict[HealthMetricType, tuple[float, float]] = {
    HealthMetricType.STEPS: (0, 100_000),
    HealthMetricType.DISTANCE: (0, 100_000),  # m
    HealthMetricType.ACTIVE_MINUTES: (0, 1440),
    HealthMetricType.CALORIES_BURNED: (0, 10_000),
    HealthMetricType.FLOORS_CLIMBED: (0, 1000),
    HealthMetricType.HEART_RATE: (30, 220),  # bpm
    HealthMetricType.BLOOD_OXYGEN: (80, 100),  # %
    HealthMetricType.RESPIRATORY_RATE: (8, 30),  # breaths/min
    HealthMetricType.BODY_TEMPERATURE: (35, 42),  # °C
    HealthMetricType.SLEEP_SESSION: (0, 24 * 60),  # min
    HealthMetricType.WEIGHT: (20, 300),  # kg
    HealthMetricType.BODY_FAT: (3, 60),  # %
    HealthMetricType.BMI: (10, 50),
    HealthMetricType.WATER_INTAKE: (0, 10_000),  # ml
    HealthMetricType.STRESS_LEVEL: (0, 100),
}


class AnomalyDetector:
    """Flag statistically outlying data points.

    Args:
        threshold:   z-score above which a point is anomalous.
        window_size: Number of historical values kept per metric.
        min_history: Values required before z-scores are computed.
        ranges:      Static expected ranges; defaults to ``METRIC_RANGES``.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        window_size: int = DEFAULT_WINDOW_SIZE,
        min_history: int = DEFAULT_MIN_HISTORY,
        ranges: dict[HealthMetricType, tuple[float, float]] | None = None,
    ) -> None:
        self._threshold = threshold
        self._window_size = window_size
        self._min_history = min_history
        self._ranges = dict(METRIC_RANGES if ranges is None else ranges)
        self._history: dict[HealthMetricType, deque[float]] = {}

    @property
    def threshold(self) -> float:
        return self._threshold

    def detect_anomaly(self, point: HealthDataPoint) -> bool:
        """Return True if ``point`` is anomalous.

        Records the value in the metric's history unless it failed the
        hard range check or is non-numeric.
        """
        if not point.is_numeric:
            return False

        value = float(point.value)
        bounds = self._ranges.get(point.metric_type)
        if bounds is not None and not (bounds[0] <= value <= bounds[1]):
            logger.debug(
                "%s value %s outside expected range %s", point.metric_type.value, value, bounds
            )
            return True

        history = self._history.get(point.metric_type)
        if history is None or len(history) < self._min_history:
            self._record(point.metric_type, value)
            return False

        mean = statistics.fmean(history)
        stddev = statistics.pstdev(history, mu=mean)
        if stddev == 0:
            z_score = 0.0 if value == mean else math.inf
        else:
            z_score = abs(value - mean) / stddev

        self._record(point.metric_type, value)
        return z_score > self._threshold

    def update_threshold(self, threshold: float) -> None:
        self._threshold = threshold

    def set_range(self, metric_type: HealthMetricType, low: float, high: float) -> None:
        self._ranges[metric_type] = (low, high)

    def clear_history(self, metric_type: HealthMetricType) -> None:
        self._history.pop(metric_type, None)

    def clear_all_history(self) -> None:
        self._history.clear()

    def history_size(self, metric_type: HealthMetricType) -> int:
        return len(self._history.get(metric_type, ()))

    def _record(self, metric_type: HealthMetricType, value: float) -> None:
        history = self._history.get(metric_type)
        if history is None:
            history = self._history[metric_type] = deque(maxlen=self._window_size)
        history.append(value)
