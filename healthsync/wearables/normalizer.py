"""Unit conversion and value transformation for incoming data points.

Connectors report values in whatever units the platform uses (Fitbit
distances in km, US scales in lb, thermometers in °F).  The normalizer
rewrites them into canonical units before anomaly detection and storage:

    distance          → m
    weight            → kg
    body_temperature  → °C

Rules are declared per metric type and applied in registration order.
Normalization is a pure function: the input point is never modified.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from healthsync.wearables.base import HealthDataPoint, HealthMetricType

logger = logging.getLogger("healthsync.wearables.normalizer")

_TRANSFORM_KINDS = ("scale", "offset", "custom")


@dataclass(frozen=True)
class UnitConversion:
    """Multiply by ``conversion_factor`` when the unit equals ``from_unit``."""

    from_unit: str
    to_unit: str
    conversion_factor: float


@dataclass(frozen=True)
class ValueTransformation:
    """Transform a value.

    Attributes:
        kind:     'scale' (multiply by ``factor``), 'offset' (add ``offset``)
                  or 'custom' (call ``function``).
        factor:   Multiplier for 'scale'.
        offset:   Addend for 'offset'.
        function: Pure callable for 'custom'.
    """

    kind: str
    factor: float = 1.0
    offset: float = 0.0
    function: Callable[[Any], Any] | None = None

    def __post_init__(self) -> None:
        if self.kind not in _TRANSFORM_KINDS:
            raise ValueError(
                f"Unknown transformation type {self.kind!r}; expected one of {_TRANSFORM_KINDS}"
            )
        if self.kind == "custom" and not callable(self.function):
            raise ValueError("A 'custom' transformation requires a callable function")

    def apply(self, value: Any) -> Any:
        if self.kind == "custom":
            return self.function(value)  # type: ignore[misc]
        if not _is_number(value):
            return value
        if self.kind == "scale":
            return value * self.factor
        return value + self.offset


@dataclass(frozen=True)
class NormalizationRule:
    """One declarative normalization rule for a metric type.

    A transformation paired with a conversion in the same rule only runs
    when that conversion fired.  A rule holding only a transformation runs
    for every point of the metric.
    """

    metric_type: HealthMetricType
    unit_conversion: UnitConversion | None = None
    value_transformation: ValueTransformation | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "NormalizationRule":
        """Build a rule from a config mapping.

        Expected shape::

            {"metric_type": "distance",
             "unit_conversion": {"from_unit": "km", "to_unit": "m", "conversion_factor": 1000},
             "value_transformation": {"type": "scale", "factor": 2}}

        Raises:
            KeyError / TypeError / ValueError: If the mapping is malformed.
        """
        if not isinstance(data, Mapping):
            raise TypeError("normalization rule must be a mapping")
        metric = HealthMetricType(data["metric_type"])

        conversion = None
        if data.get("unit_conversion"):
            uc = data["unit_conversion"]
            conversion = UnitConversion(
                from_unit=str(uc["from_unit"]),
                to_unit=str(uc["to_unit"]),
                conversion_factor=float(uc["conversion_factor"]),
            )

        transformation = None
        if data.get("value_transformation"):
            vt = data["value_transformation"]
            kind = vt.get("type") or vt.get("kind")
            if kind == "custom":
                raise ValueError("custom transformations cannot be declared in config")
            transformation = ValueTransformation(
                kind=kind,
                factor=float(vt.get("factor", 1.0)),
                offset=float(vt.get("offset", 0.0)),
            )

        if conversion is None and transformation is None:
            raise ValueError("rule needs a unit_conversion or a value_transformation")
        return cls(metric, conversion, transformation)

    def to_mapping(self) -> dict:
        """Inverse of ``from_mapping``.

        Raises:
            ValueError: For custom transformations, which hold a callable.
        """
        data: dict[str, Any] = {"metric_type": self.metric_type.value}
        if self.unit_conversion is not None:
            data["unit_conversion"] = dataclasses.asdict(self.unit_conversion)
        if self.value_transformation is not None:
            vt = self.value_transformation
            if vt.kind == "custom":
                raise ValueError("custom transformations are not serializable")
            data["value_transformation"] = {"type": vt.kind, "factor": vt.factor, "offset": vt.offset}
        return data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def default_rules() -> list[NormalizationRule]:
    """Built-in conversions to canonical units."""
    return [
        NormalizationRule(HealthMetricType.DISTANCE, UnitConversion("km", "m", 1000)),
        NormalizationRule(HealthMetricType.DISTANCE, UnitConversion("mi", "m", 1609.34)),
        NormalizationRule(HealthMetricType.DISTANCE, UnitConversion("ft", "m", 0.3048)),
        NormalizationRule(HealthMetricType.WEIGHT, UnitConversion("lb", "kg", 0.453592)),
        # (F - 32) * 5/9 == F * 5/9 - 32 * 5/9
        NormalizationRule(
            HealthMetricType.BODY_TEMPERATURE,
            UnitConversion("F", "C", 5 / 9),
            ValueTransformation("offset", offset=-32 * 5 / 9),
        ),
    ]


class DataNormalizer:
    """Apply per-metric normalization rules to data points.

    Args:
        rules: Extra rules, registered after the defaults.
    """

    def __init__(self, rules: Iterable[NormalizationRule] | None = None) -> None:
        self._rules: dict[HealthMetricType, list[NormalizationRule]] = {}
        self._install_defaults()
        for rule in rules or ():
            self.add_normalization_rule(rule)

    def normalize(self, point: HealthDataPoint) -> HealthDataPoint:
        """Return a normalized copy of ``point``.

        Points without matching rules are returned unchanged.
        """
        rules = self._rules.get(point.metric_type)
        if not rules:
            return point

        value = point.value
        unit = point.unit
        for rule in rules:
            converted = False
            conversion = rule.unit_conversion
            if conversion is not None and unit == conversion.from_unit and _is_number(value):
                value = value * conversion.conversion_factor
                unit = conversion.to_unit
                converted = True

            transformation = rule.value_transformation
            if transformation is not None and (conversion is None or converted):
                value = transformation.apply(value)

        if value == point.value and unit == point.unit:
            return point
        return dataclasses.replace(point, value=value, unit=unit)

    def add_normalization_rule(self, rule: NormalizationRule) -> None:
        self._rules.setdefault(rule.metric_type, []).append(rule)

    def clear_normalization_rules(self, metric_type: HealthMetricType) -> None:
        self._rules.pop(metric_type, None)

    def reset_to_defaults(self) -> None:
        self._rules.clear()
        self._install_defaults()

    def rules_for(self, metric_type: HealthMetricType) -> list[NormalizationRule]:
        return list(self._rules.get(metric_type, []))

    def _install_defaults(self) -> None:
        for rule in default_rules():
            self.add_normalization_rule(rule)
