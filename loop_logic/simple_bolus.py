"""
Simple bolus calculator: meal and correction bolus without a forecast.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .schedule import CarbRatioSchedule, GlucoseRangeSchedule, InsulinSensitivitySchedule
from .units import GlucoseQuantity


def recommended_insulin(
    meal_carbs: Optional[float],
    manual_glucose: Optional[GlucoseQuantity],
    active_insulin: float,
    carb_ratio_schedule: CarbRatioSchedule,
    correction_range_schedule: GlucoseRangeSchedule,
    sensitivity_schedule: InsulinSensitivitySchedule,
    at: datetime,
) -> float:
    """Units to bolus: ``carbs/CR + (glucose - target)/ISF - IOB``, never negative.

    The correction term only applies when ``manual_glucose`` lies outside the
    correction range (bounds inclusive).
    """
    bolus = 0.0

    if meal_carbs is not None:
        bolus += meal_carbs / carb_ratio_schedule.value_at(at)

    if manual_glucose is not None:
        correction_range = correction_range_schedule.value_at(at)
        if not correction_range.contains(manual_glucose):
            sensitivity = sensitivity_schedule.value_at(at).mgdl
            bolus += (manual_glucose.mgdl - correction_range.average.mgdl) / sensitivity

    bolus -= active_insulin
    return max(0.0, bolus)
