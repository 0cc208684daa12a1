"""
Unit tests for daily schedules and temporary overrides.

Tests cover:
- Piecewise lookup and wrap at midnight
- Item validation
- Override application per schedule kind (scale factor, target range)
- Idempotent override application
- Absolute segments between two dates
"""

import pytest
from datetime import datetime, timedelta

from loop_logic.schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
    OverrideContext,
    OverrideSettings,
    TemporaryScheduleOverride,
)
from loop_logic.units import GlucoseQuantity, GlucoseRange


@pytest.fixture
def day():
    return datetime(2025, 1, 1)


@pytest.fixture
def basal():
    return BasalRateSchedule([(timedelta(0), 1.0), (timedelta(hours=6), 1.5), (timedelta(hours=22), 0.8)])


def workout(start, duration=timedelta(hours=1), factor=1.5):
    return TemporaryScheduleOverride(
        context=OverrideContext.CUSTOM,
        settings=OverrideSettings(
            target_range=GlucoseRange.mg_dl(140, 160), insulin_needs_scale_factor=factor
        ),
        start_date=start,
        duration=duration,
    )


class TestScheduleLookup:
    """Resolving a value for a time of day"""

    def test_value_at_item_boundaries(self, basal, day):
        assert basal.value_at(day + timedelta(hours=5, minutes=59)) == 1.0
        assert basal.value_at(day + timedelta(hours=6)) == 1.5
        assert basal.value_at(day + timedelta(hours=23)) == 0.8

    def test_wraps_at_midnight(self, basal, day):
        assert basal.value_at(day + timedelta(days=1, hours=1)) == 1.0

    def test_constant_schedule(self, day):
        isf = InsulinSensitivitySchedule.mg_dl(45.0)
        assert isf.value_at(day + timedelta(hours=13)) == GlucoseQuantity.mg_dl(45.0)


class TestScheduleValidation:
    """Malformed item lists are rejected"""

    def test_empty_schedule(self):
        with pytest.raises(ValueError):
            BasalRateSchedule([])

    def test_first_item_must_start_at_midnight(self):
        with pytest.raises(ValueError):
            BasalRateSchedule([(timedelta(hours=1), 1.0)])

    def test_items_must_increase(self):
        with pytest.raises(ValueError):
            BasalRateSchedule([(timedelta(0), 1.0), (timedelta(hours=6), 1.2), (timedelta(hours=3), 1.1)])

    def test_items_within_a_day(self):
        with pytest.raises(ValueError):
            BasalRateSchedule([(timedelta(0), 1.0), (timedelta(hours=24), 1.2)])


class TestOverrideApplication:
    """Each schedule kind applies the override its own way"""

    def test_basal_scaled_up(self, basal, day):
        start = day + timedelta(hours=8)
        scheduled = basal.applying_override(workout(start))
        assert scheduled.value_at(start + timedelta(minutes=30)) == pytest.approx(2.25)

    def test_inactive_outside_window(self, basal, day):
        start = day + timedelta(hours=8)
        scheduled = basal.applying_override(workout(start))
        assert scheduled.value_at(start - timedelta(minutes=1)) == 1.5
        assert scheduled.value_at(start + timedelta(hours=1)) == 1.5

    def test_sensitivity_divided(self, day):
        start = day + timedelta(hours=8)
        isf = InsulinSensitivitySchedule.mg_dl(60.0).applying_override(workout(start))
        assert isf.value_at(start).mgdl == pytest.approx(40.0)

    def test_carb_ratio_divided(self, day):
        start = day + timedelta(hours=8)
        ratio = CarbRatioSchedule.constant(12.0).applying_override(workout(start))
        assert ratio.value_at(start) == pytest.approx(8.0)

    def test_target_range_replaced(self, day):
        start = day + timedelta(hours=8)
        targets = GlucoseRangeSchedule.mg_dl(100, 110).applying_override(workout(start))
        assert targets.value_at(start) == GlucoseRange.mg_dl(140, 160)

    def test_target_range_kept_without_override_range(self, day):
        start = day + timedelta(hours=8)
        override = TemporaryScheduleOverride(
            context=OverrideContext.PRESET,
            settings=OverrideSettings(insulin_needs_scale_factor=0.5),
            start_date=start,
            duration=timedelta(hours=1),
        )
        targets = GlucoseRangeSchedule.mg_dl(100, 110).applying_override(override)
        assert targets.value_at(start) == GlucoseRange.mg_dl(100, 110)

    def test_original_schedule_unchanged(self, basal, day):
        start = day + timedelta(hours=8)
        basal.applying_override(workout(start))
        assert basal.override is None
        assert basal.value_at(start) == 1.5

    def test_scale_factor_must_be_positive(self):
        with pytest.raises(ValueError):
            OverrideSettings(insulin_needs_scale_factor=0.0)


class TestOverrideIdempotence:
    """Applying the same override twice resolves like applying it once"""

    def test_apply_twice(self, basal, day):
        start = day + timedelta(hours=8)
        override = workout(start)
        once = basal.applying_override(override)
        twice = once.applying_override(override)
        for minutes in range(-30, 120, 5):
            at = start + timedelta(minutes=minutes)
            assert twice.value_at(at) == once.value_at(at)
        assert twice == once

    def test_new_override_replaces_previous(self, basal, day):
        start = day + timedelta(hours=8)
        first = basal.applying_override(workout(start, factor=2.0))
        second = first.applying_override(workout(start, factor=0.5))
        assert second.value_at(start) == pytest.approx(0.75)


class TestOverrideLifetime:
    """End dates and indefinite overrides"""

    def test_finite_override(self, day):
        override = workout(day, duration=timedelta(minutes=30))
        assert override.end_date == day + timedelta(minutes=30)
        assert override.is_active(day + timedelta(minutes=29))
        assert not override.is_active(day + timedelta(minutes=30))
        assert override.has_finished(day + timedelta(minutes=30))

    def test_indefinite_override(self, day):
        override = workout(day, duration=None)
        assert override.is_indefinite
        assert override.is_active(day + timedelta(days=365))
        assert not override.has_finished(day + timedelta(days=365))


class TestBetween:
    """Absolute segments over a date interval"""

    def test_segments_split_at_item_boundary(self, basal, day):
        segments = basal.between(day + timedelta(hours=5), day + timedelta(hours=7))
        assert [s.value for s in segments] == [1.0, 1.5]
        assert segments[0].end_date == day + timedelta(hours=6)
        assert segments[-1].end_date == day + timedelta(hours=7)

    def test_segments_split_at_override_edges(self, basal, day):
        start = day + timedelta(hours=8)
        scheduled = basal.applying_override(workout(start))
        segments = scheduled.between(day + timedelta(hours=7), day + timedelta(hours=10))
        assert [s.value for s in segments] == pytest.approx([1.5, 2.25, 1.5])

    def test_segments_across_midnight(self, basal, day):
        segments = basal.between(day + timedelta(hours=23), day + timedelta(days=1, hours=1))
        assert [s.value for s in segments] == [0.8, 1.0]
