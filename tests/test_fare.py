"""Tests for fare estimation."""

import pytest

from core.exceptions import FareInputError, InvalidCoordinates
from fare import PEAK_SURGE_MULTIPLIER, FareCalculator
from settings import FareSettings

PICKUP = (-74.006, 40.7128)
DESTINATION = (-73.996, 40.7589)


@pytest.fixture
def calculator() -> FareCalculator:
    return FareCalculator(FareSettings())


@pytest.mark.unit
class TestCalculate:
    def test_breakdown_without_surge(self, calculator):
        breakdown = calculator.calculate(10.0, 20.0)

        assert breakdown.base == 2.50
        assert breakdown.distance == 12.00
        assert breakdown.time == 5.00
        assert breakdown.surge == 0.0
        assert breakdown.subtotal == 19.50
        assert breakdown.total == 19.50

    def test_surge_applies_to_subtotal(self, calculator):
        breakdown = calculator.calculate(10.0, 20.0, surge_multiplier=1.5)

        assert breakdown.surge == 9.75
        assert breakdown.total == 29.25
        assert breakdown.surge_multiplier == 1.5

    def test_zero_trip_costs_base_fare(self, calculator):
        assert calculator.calculate(0.0, 0.0).total == 2.50

    def test_deterministic(self, calculator):
        assert calculator.calculate(7.3, 14.6, 2.0) == calculator.calculate(7.3, 14.6, 2.0)

    def test_rejects_negative_distance(self, calculator):
        with pytest.raises(FareInputError):
            calculator.calculate(-1.0, 5.0)

    def test_rejects_negative_duration(self, calculator):
        with pytest.raises(FareInputError):
            calculator.calculate(1.0, -5.0)

    @pytest.mark.parametrize("surge", [0.5, 0.99, 5.01])
    def test_rejects_out_of_range_surge(self, calculator, surge):
        with pytest.raises(FareInputError):
            calculator.calculate(1.0, 5.0, surge_multiplier=surge)

    def test_as_dict(self, calculator):
        assert calculator.calculate(10.0, 20.0).as_dict() == {
            "base": 2.5,
            "distance": 12.0,
            "time": 5.0,
            "surge": 0.0,
        }

    def test_custom_rates(self):
        calc = FareCalculator(FareSettings(base_fare=1.0, per_km_rate=2.0, per_minute_rate=0.5))
        assert calc.calculate(3.0, 4.0).total == 9.0


@pytest.mark.unit
class TestEstimate:
    def test_trip_metrics_use_average_speed(self, calculator):
        distance_km, duration_min = calculator.trip_metrics(PICKUP, DESTINATION)

        assert distance_km == pytest.approx(5.19, rel=0.01)
        assert duration_min == pytest.approx(distance_km * 2, abs=0.01)

    def test_same_point_is_free_of_distance(self, calculator):
        assert calculator.trip_metrics(PICKUP, PICKUP) == (0.0, 0.0)

    def test_estimate_combines_metrics_and_breakdown(self, calculator):
        estimate = calculator.estimate(PICKUP, DESTINATION)

        assert estimate.currency == "USD"
        assert estimate.surge_multiplier == 1.0
        expected = calculator.calculate(estimate.distance_km, estimate.duration_min)
        assert estimate.total == expected.total

    def test_estimate_with_surge_costs_more(self, calculator):
        plain = calculator.estimate(PICKUP, DESTINATION)
        surged = calculator.estimate(PICKUP, DESTINATION, surge_multiplier=2.0)
        assert surged.total > plain.total

    def test_estimate_rejects_bad_coordinates(self, calculator):
        with pytest.raises(InvalidCoordinates):
            calculator.estimate((-200.0, 0.0), DESTINATION)

    def test_estimate_range(self, calculator):
        fare_range = calculator.estimate_range(PICKUP, DESTINATION)
        estimate = calculator.estimate(PICKUP, DESTINATION)

        assert fare_range.min_fare == estimate.total
        assert fare_range.max_fare == calculator.calculate(
            estimate.distance_km, estimate.duration_min, PEAK_SURGE_MULTIPLIER
        ).total
        assert fare_range.max_fare > fare_range.min_fare

    def test_estimate_range_respects_max_surge(self):
        calc = FareCalculator(FareSettings(max_surge_multiplier=1.0))
        fare_range = calc.estimate_range(PICKUP, DESTINATION)
        assert fare_range.max_fare == fare_range.min_fare
