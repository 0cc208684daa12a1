"""
Unit tests for the forecast-free bolus calculator.
"""

import pytest

from loop_logic.schedule import InsulinSensitivitySchedule
from loop_logic.simple_bolus import recommended_insulin
from loop_logic.units import GlucoseQuantity


@pytest.fixture
def calculate(now, carb_ratio_schedule, target_schedule):
    isf = InsulinSensitivitySchedule.mg_dl(80.0)

    def run(carbs=None, glucose=None, active_insulin=0.0):
        manual = GlucoseQuantity.mg_dl(glucose) if glucose is not None else None
        return recommended_insulin(carbs, manual, active_insulin, carb_ratio_schedule, target_schedule, isf, now)

    return run


class TestSimpleBolus:
    """carbs / CR + (glucose - target) / ISF - IOB"""

    def test_meal_only(self, calculate):
        assert calculate(carbs=40.0) == pytest.approx(4.0)

    def test_correction_only(self, calculate):
        assert calculate(glucose=180.0) == pytest.approx(0.9375)

    def test_low_glucose_reduces_meal_bolus(self, calculate):
        assert calculate(carbs=40.0, glucose=70.0) == pytest.approx(3.5625)

    def test_in_range_glucose_no_correction(self, calculate):
        assert calculate(carbs=40.0, glucose=110.0) == pytest.approx(4.0)
        assert calculate(carbs=40.0, glucose=100.0) == pytest.approx(4.0)

    def test_active_insulin_subtracted(self, calculate):
        assert calculate(carbs=40.0, active_insulin=1.5) == pytest.approx(2.5)

    def test_never_negative(self, calculate):
        assert calculate(carbs=40.0, active_insulin=10.0) == 0.0
        assert calculate(carbs=40.0, glucose=180.0, active_insulin=10.0) == 0.0
        assert calculate(glucose=60.0) == 0.0

    def test_nothing_entered(self, calculate):
        assert calculate() == 0.0
