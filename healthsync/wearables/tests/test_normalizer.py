"""Tests for unit conversion and value transformation rules."""

from __future__ import annotations

import pytest

from healthsync.wearables.base import HealthMetricType
from healthsync.wearables.normalizer import (
    DataNormalizer,
    NormalizationRule,
    UnitConversion,
    ValueTransformation,
)
from healthsync.wearables.tests.conftest import make_point


@pytest.fixture
def normalizer() -> DataNormalizer:
    return DataNormalizer()


class TestDefaultConversions:
    def test_km_to_metres(self, normalizer: DataNormalizer) -> None:
        result = normalizer.normalize(make_point(HealthMetricType.DISTANCE, 5, "km"))
        assert result.value == 5000
        assert result.unit == "m"

    def test_miles_to_metres(self, normalizer: DataNormalizer) -> None:
        result = normalizer.normalize(make_point(HealthMetricType.DISTANCE, 1, "mi"))
        assert result.value == pytest.approx(1609.34)

    def test_pounds_to_kilograms(self, normalizer: DataNormalizer) -> None:
        result = normalizer.normalize(make_point(HealthMetricType.WEIGHT, 150, "lb"))
        assert result.value == pytest.approx(68.0388)
        assert result.unit == "kg"

    def test_fahrenheit_to_celsius(self, normalizer: DataNormalizer) -> None:
        result = normalizer.normalize(make_point(HealthMetricType.BODY_TEMPERATURE, 98.6, "F"))
        assert result.value == pytest.approx(37.0)
        assert result.unit == "C"

    def test_celsius_untouched(self, normalizer: DataNormalizer) -> None:
        point = make_point(HealthMetricType.BODY_TEMPERATURE, 36.6, "C")
        assert normalizer.normalize(point) is point

    def test_idempotent(self, normalizer: DataNormalizer) -> None:
        once = normalizer.normalize(make_point(HealthMetricType.DISTANCE, 5, "km"))
        assert normalizer.normalize(once) == once

    def test_input_not_mutated(self, normalizer: DataNormalizer) -> None:
        point = make_point(HealthMetricType.DISTANCE, 5, "km")
        normalizer.normalize(point)
        assert point.value == 5
        assert point.unit == "km"

    def test_metric_without_rules_returned_as_is(self, normalizer: DataNormalizer) -> None:
        point = make_point(HealthMetricType.STEPS, 100, "count")
        assert normalizer.normalize(point) is point

    def test_structured_value_untouched(self, normalizer: DataNormalizer) -> None:
        point = make_point(HealthMetricType.DISTANCE, {"walk": 1}, "km")
        assert normalizer.normalize(point).value == {"walk": 1}


class TestCustomRules:
    def test_rule_added_after_defaults(self) -> None:
        normalizer = DataNormalizer(
            [NormalizationRule(HealthMetricType.WATER_INTAKE, UnitConversion("fl_oz", "ml", 29.5735))]
        )
        result = normalizer.normalize(make_point(HealthMetricType.WATER_INTAKE, 10, "fl_oz"))
        assert result.value == pytest.approx(295.735)
        assert result.unit == "ml"

    def test_transformation_only_rule_always_runs(self, normalizer: DataNormalizer) -> None:
        normalizer.add_normalization_rule(
            NormalizationRule(
                HealthMetricType.STRESS_LEVEL,
                value_transformation=ValueTransformation("scale", factor=10),
            )
        )
        assert normalizer.normalize(make_point(HealthMetricType.STRESS_LEVEL, 4, "score")).value == 40

    def test_custom_function(self, normalizer: DataNormalizer) -> None:
        normalizer.add_normalization_rule(
            NormalizationRule(
                HealthMetricType.STEPS,
                value_transformation=ValueTransformation("custom", function=round),
            )
        )
        assert normalizer.normalize(make_point(HealthMetricType.STEPS, 10.6, "count")).value == 11

    def test_unknown_transformation_kind(self) -> None:
        with pytest.raises(ValueError, match="Unknown transformation"):
            ValueTransformation("square")

    def test_clear_and_reset(self, normalizer: DataNormalizer) -> None:
        point = make_point(HealthMetricType.DISTANCE, 5, "km")
        normalizer.clear_normalization_rules(HealthMetricType.DISTANCE)
        assert normalizer.normalize(point) is point
        normalizer.reset_to_defaults()
        assert normalizer.normalize(point).value == 5000

    def test_mapping_round_trip(self) -> None:
        mapping = {
            "metric_type": "distance",
            "unit_conversion": {"from_unit": "yd", "to_unit": "m", "conversion_factor": 0.9144},
            "value_transformation": {"type": "offset", "factor": 1.0, "offset": 2.0},
        }
        assert NormalizationRule.from_mapping(mapping).to_mapping() == mapping

    def test_custom_rule_rejected_in_config(self) -> None:
        with pytest.raises(ValueError, match="custom"):
            NormalizationRule.from_mapping(
                {"metric_type": "steps", "value_transformation": {"type": "custom"}}
            )
