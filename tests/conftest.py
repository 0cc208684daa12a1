"""Shared fixtures: a steady-state patient day and constant therapy settings."""

from datetime import datetime, timedelta

import pytest

from loop_logic.config import AlgorithmConfig
from loop_logic.models import GlucoseValue
from loop_logic.schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
)
from loop_logic.settings import LoopSettings
from loop_logic.units import GlucoseQuantity


@pytest.fixture
def now():
    return datetime(2025, 1, 1, 12, 0)


@pytest.fixture
def basal_schedule():
    return BasalRateSchedule.constant(1.0)


@pytest.fixture
def isf_schedule():
    return InsulinSensitivitySchedule.mg_dl(50.0)


@pytest.fixture
def carb_ratio_schedule():
    return CarbRatioSchedule.constant(10.0)


@pytest.fixture
def target_schedule():
    return GlucoseRangeSchedule.mg_dl(100.0, 110.0)


@pytest.fixture
def settings(basal_schedule, isf_schedule, carb_ratio_schedule, target_schedule):
    return LoopSettings(
        basal_rate_schedule=basal_schedule,
        insulin_sensitivity_schedule=isf_schedule,
        carb_ratio_schedule=carb_ratio_schedule,
        glucose_target_range_schedule=target_schedule,
        pre_meal_target_range=None,
        maximum_basal_rate_per_hour=3.0,
        maximum_bolus=5.0,
        suspend_threshold=GlucoseQuantity.mg_dl(70.0),
        dosing_enabled=True,
        config=AlgorithmConfig(),
    )


def make_glucose(end, values, delta=timedelta(minutes=5)):
    """Samples ending at ``end``, one per ``delta``."""
    count = len(values)
    return [
        GlucoseValue(end - delta * (count - 1 - i), GlucoseQuantity.mg_dl(v))
        for i, v in enumerate(values)
    ]


@pytest.fixture
def flat_glucose(now):
    return make_glucose(now, [120.0] * 13)


@pytest.fixture
def glucose_series():
    return make_glucose
