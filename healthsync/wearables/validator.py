"""Structural and physiological validation of incoming data points.

Each point goes through two phases:

1. Structural: required fields present, timestamps parse, the observation
   is not in the future and was not synced before it happened.
2. Metric-specific: every predicate registered for the point's metric type
   must hold (e.g. heart rate within 30–220 bpm).

Validation never raises.  A failing point is simply rejected; the sync
manager records a warning and drops it from the pass.
"""

from __future__ import annotations

import logging
from typing import Callable

from healthsync.wearables.base import (
    Clock,
    HealthDataPoint,
    HealthMetricType,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("healthsync.wearables.validator")

#: A predicate over one data point.  Returning False rejects the point.
ValidationRule = Callable[[HealthDataPoint], bool]

_REQUIRED_FIELDS = (
    "id",
    "user_id",
    "source",
    "metric_type",
    "timestamp",
    "value",
    "unit",
    "sync_timestamp",
)


def range_rule(low: float, high: float, *, inclusive: bool = True) -> ValidationRule:
    """Build a predicate accepting numeric values within [low, high].

    With ``inclusive=False`` the bounds themselves are rejected.
    """

    def _check(point: HealthDataPoint) -> bool:
        if not point.is_numeric:
            return False
        if inclusive:
            return low <= point.value <= high
        return low < point.value < high

    return _check


def _blood_pressure_rule(point: HealthDataPoint) -> bool:
    value = point.value
    systolic = value["systolic"]
    diastolic = value["diastolic"]
    return (
        70 <= systolic <= 250
        and 40 <= diastolic <= 150
        and systolic > diastolic
    )


def default_rules() -> dict[HealthMetricType, list[ValidationRule]]:
    return {
        HealthMetricType.STEPS: [range_rule(0, 100_000)],
        HealthMetricType.HEART_RATE: [range_rule(30, 220)],
        HealthMetricType.BLOOD_PRESSURE: [_blood_pressure_rule],
        HealthMetricType.WEIGHT: [range_rule(0, 500, inclusive=False)],
        HealthMetricType.SLEEP_SESSION: [range_rule(0, 24 * 60)],
    }


class DataValidator:
    """Pluggable rule engine deciding whether a data point is acceptable.

    Args:
        clock: Time source used for the "not in the future" check.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._rules: dict[HealthMetricType, list[ValidationRule]] = {}
        self._install_defaults()

    def validate(self, point: HealthDataPoint) -> bool:
        """Return True if the point passes both validation phases."""
        ok, _ = self.validate_with_reason(point)
        return ok

    def validate_with_reason(self, point: HealthDataPoint) -> tuple[bool, str | None]:
        """Validate and explain the first failure.

        Returns:
            (True, None) for a valid point, otherwise (False, reason).
        """
        reason = self._check_structure(point)
        if reason is not None:
            return False, reason

        for rule in self._rules.get(point.metric_type, []):
            try:
                passed = bool(rule(point))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.debug("Validation rule raised for %s: %s", point.id, exc)
                passed = False
            if not passed:
                return False, f"value {point.value!r} out of range for {point.metric_type.value}"
        return True, None

    def add_validation_rule(self, metric_type: HealthMetricType, rule: ValidationRule) -> None:
        self._rules.setdefault(metric_type, []).append(rule)

    def clear_validation_rules(self, metric_type: HealthMetricType) -> None:
        self._rules.pop(metric_type, None)

    def reset_to_defaults(self) -> None:
        self._rules.clear()
        self._install_defaults()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _install_defaults(self) -> None:
        for metric_type, rules in default_rules().items():
            for rule in rules:
                self.add_validation_rule(metric_type, rule)

    def _check_structure(self, point: HealthDataPoint) -> str | None:
        for name in _REQUIRED_FIELDS:
            value = getattr(point, name, None)
            if value is None or value == "":
                return f"missing required field '{name}'"

        observed = parse_timestamp(point.timestamp)
        if observed is None:
            return f"unparseable timestamp {point.timestamp!r}"
        synced = parse_timestamp(point.sync_timestamp)
        if synced is None:
            return f"unparseable sync timestamp {point.sync_timestamp!r}"

        if observed > self._clock():
            return "timestamp is in the future"
        if synced < observed:
            return "synced before it was observed"
        return None
