"""
Versioned therapy-settings snapshot.

``LoopSettings`` is immutable: every change returns a new snapshot with
``version + 1``, so a loop cycle always finishes against the snapshot it
started with.

Override state holds at most one pre-meal override and at most one
non-pre-meal ("schedule") override. Both are assigned through
``with_schedule_override`` / ``with_pre_meal_override``, which enforce that:
- the pre-meal slot only holds pre-meal overrides without a scale factor,
- the schedule slot never holds a pre-meal override,
- a legacy-workout override and a pre-meal override are mutually exclusive.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional
import logging

from .config import AlgorithmConfig
from .errors import OverrideContractError
from .forecast import PredictionInputEffect
from .models import NewCarbEntry
from .schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    EnactTrigger,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
    OverrideContext,
    OverrideSettings,
    TemporaryScheduleOverride,
)
from .units import GlucoseQuantity, GlucoseRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverrideState:
    pre_meal: Optional[TemporaryScheduleOverride] = None
    schedule: Optional[TemporaryScheduleOverride] = None


@dataclass(frozen=True)
class LoopSettings:
    basal_rate_schedule: Optional[BasalRateSchedule] = None
    insulin_sensitivity_schedule: Optional[InsulinSensitivitySchedule] = None
    carb_ratio_schedule: Optional[CarbRatioSchedule] = None
    glucose_target_range_schedule: Optional[GlucoseRangeSchedule] = None
    pre_meal_target_range: Optional[GlucoseRange] = None
    legacy_workout_target_range: Optional[GlucoseRange] = None
    maximum_basal_rate_per_hour: Optional[float] = None
    maximum_bolus: Optional[float] = None
    suspend_threshold: Optional[GlucoseQuantity] = None
    dosing_enabled: bool = False
    overrides: OverrideState = field(default_factory=OverrideState)
    config: AlgorithmConfig = field(default_factory=AlgorithmConfig)
    version: int = 0

    def updated(self, **changes) -> "LoopSettings":
        return replace(self, version=self.version + 1, **changes)

    # -- override state -----------------------------------------------------

    @property
    def schedule_override(self) -> Optional[TemporaryScheduleOverride]:
        return self.overrides.schedule

    @property
    def pre_meal_override(self) -> Optional[TemporaryScheduleOverride]:
        return self.overrides.pre_meal

    def with_schedule_override(self, override: Optional[TemporaryScheduleOverride]) -> "LoopSettings":
        """Set (or clear, with None) the non-pre-meal override."""
        if override is not None and override.context == OverrideContext.PRE_MEAL:
            raise OverrideContractError(
                "The schedule override slot must not hold a pre-meal override; "
                "use with_pre_meal_override instead"
            )
        pre_meal = self.overrides.pre_meal
        if override is not None and override.context == OverrideContext.LEGACY_WORKOUT:
            pre_meal = None
        return self.updated(overrides=OverrideState(pre_meal=pre_meal, schedule=override))

    def with_pre_meal_override(self, override: Optional[TemporaryScheduleOverride]) -> "LoopSettings":
        """Set (or clear, with None) the pre-meal override."""
        if override is not None and (
            override.context != OverrideContext.PRE_MEAL
            or override.settings.insulin_needs_scale_factor is not None
        ):
            raise OverrideContractError(
                "The pre-meal override slot only holds pre-meal target range overrides"
            )
        schedule = self.overrides.schedule
        if (
            override is not None
            and schedule is not None
            and schedule.context == OverrideContext.LEGACY_WORKOUT
        ):
            schedule = None
        return self.updated(overrides=OverrideState(pre_meal=override, schedule=schedule))

    def enable_pre_meal_override(self, at: datetime, duration: timedelta) -> "LoopSettings":
        if self.pre_meal_target_range is None:
            logger.warning("Pre-meal override requested without a pre-meal target range")
            return self
        override = TemporaryScheduleOverride(
            context=OverrideContext.PRE_MEAL,
            settings=OverrideSettings(target_range=self.pre_meal_target_range),
            start_date=at,
            duration=duration,
            enact_trigger=EnactTrigger.LOCAL,
        )
        return self.with_pre_meal_override(override)

    def legacy_workout_override(
        self, at: datetime, duration: Optional[timedelta]
    ) -> Optional[TemporaryScheduleOverride]:
        """Workout override; ``duration=None`` means indefinite."""
        if self.legacy_workout_target_range is None:
            return None
        return TemporaryScheduleOverride(
            context=OverrideContext.LEGACY_WORKOUT,
            settings=OverrideSettings(target_range=self.legacy_workout_target_range),
            start_date=at,
            duration=duration,
            enact_trigger=EnactTrigger.LOCAL,
        )

    def enable_legacy_workout_override(
        self, at: datetime, duration: Optional[timedelta]
    ) -> "LoopSettings":
        override = self.legacy_workout_override(at, duration)
        if override is None:
            logger.warning("Workout override requested without a workout target range")
            return self
        return self.with_schedule_override(override)

    def clear_override(self, context: Optional[OverrideContext] = None) -> "LoopSettings":
        if context == OverrideContext.PRE_MEAL:
            return self.with_pre_meal_override(None)
        current = self.overrides.schedule
        if current is None:
            return self
        if context is None or current.context == context:
            return self.with_schedule_override(None)
        return self

    def schedule_override_enabled(self, at: datetime) -> bool:
        return self.overrides.schedule is not None and self.overrides.schedule.is_active(at)

    def pre_meal_target_enabled(self, at: datetime) -> bool:
        return self.overrides.pre_meal is not None and self.overrides.pre_meal.is_active(at)

    def future_override_enabled(self, relative_to: datetime) -> bool:
        current = self.overrides.schedule
        return current is not None and current.start_date > relative_to

    @property
    def is_schedule_override_infinite_workout(self) -> bool:
        current = self.overrides.schedule
        return (
            current is not None
            and current.context == OverrideContext.LEGACY_WORKOUT
            and current.is_indefinite
        )

    def effective_override(
        self, now: datetime, potential_carb_entry: Optional[NewCarbEntry] = None
    ) -> Optional[TemporaryScheduleOverride]:
        """Override that governs the target range right now.

        A potential carb entry means the meal is about to be eaten, so the
        pre-meal override no longer applies.
        """
        pre_meal = self.overrides.pre_meal if potential_carb_entry is None else None
        schedule = self.overrides.schedule
        if pre_meal is not None and schedule is None:
            return pre_meal
        if pre_meal is None:
            return schedule
        return pre_meal if pre_meal.end_date > now else schedule

    def effective_target_range_schedule(
        self, now: datetime, potential_carb_entry: Optional[NewCarbEntry] = None
    ) -> Optional[GlucoseRangeSchedule]:
        if self.glucose_target_range_schedule is None:
            return None
        override = self.effective_override(now, potential_carb_entry)
        return self.glucose_target_range_schedule.applying_override(override)

    # -- schedules with the scale factor of the active override -------------

    def _scaling_override(self) -> Optional[TemporaryScheduleOverride]:
        current = self.overrides.schedule
        if current is None or current.settings.insulin_needs_scale_factor is None:
            return None
        return current

    @property
    def basal_rate_schedule_applying_override(self) -> Optional[BasalRateSchedule]:
        if self.basal_rate_schedule is None:
            return None
        return self.basal_rate_schedule.applying_override(self._scaling_override())

    @property
    def insulin_sensitivity_schedule_applying_override(self) -> Optional[InsulinSensitivitySchedule]:
        if self.insulin_sensitivity_schedule is None:
            return None
        return self.insulin_sensitivity_schedule.applying_override(self._scaling_override())

    @property
    def carb_ratio_schedule_applying_override(self) -> Optional[CarbRatioSchedule]:
        if self.carb_ratio_schedule is None:
            return None
        return self.carb_ratio_schedule.applying_override(self._scaling_override())

    def is_basal_rate_schedule_override_active(self, at: datetime) -> bool:
        """True when the neutral basal rate differs from the pump's own schedule."""
        scaling = self._scaling_override()
        return (
            scaling is not None
            and scaling.is_active(at)
            and scaling.settings.effective_insulin_needs_scale_factor != 1.0
        )

    @property
    def enabled_effects(self) -> PredictionInputEffect:
        inputs = PredictionInputEffect.all()
        if not self.config.retrospective_correction_enabled:
            inputs &= ~PredictionInputEffect.RETROSPECTION
        return inputs
