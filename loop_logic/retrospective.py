"""
Retrospective correction.

Feeds the recent unexplained glucose change (the summed discrepancy between
observed counteraction and modeled carb effect) back into the forecast as a
decaying velocity.

Two variants:

- ``StandardRetrospectiveCorrection``: the latest summed discrepancy, as a
  velocity over the grouping interval, decayed linearly over 60 minutes.
- ``IntegralRetrospectiveCorrection``: proportional-integral-differential
  response to a run of same-signed discrepancies, with the integral term
  limited by what a zero temp basal could offset; the effect lasts longer the
  longer the run (up to 180 minutes).

Both keep the total correction of the last computation for inspection; that
state is recomputed every cycle and never persisted.
"""

from __future__ import annotations

from datetime import timedelta
from math import exp
from typing import List, Optional, Sequence
import logging

from .errors import GlucoseTooOldError
from .glucose_math import decay_effect
from .models import GlucoseChange, GlucoseEffect, GlucoseValue, minutes
from .schedule import BasalRateSchedule, GlucoseRangeSchedule, InsulinSensitivitySchedule
from .units import GlucoseQuantity

logger = logging.getLogger(__name__)


class RetrospectiveCorrection:
    """Common state and helpers; subclasses implement ``compute_effect``."""

    retrospection_interval: timedelta = timedelta(minutes=30)

    def __init__(self, effect_duration: timedelta = timedelta(minutes=60), delta: timedelta = timedelta(minutes=5)):
        self.effect_duration = effect_duration
        self.delta = delta
        self.total_glucose_correction_effect: Optional[GlucoseQuantity] = None

    def _current_discrepancy(
        self,
        starting_at: GlucoseValue,
        discrepancies_summed: Sequence[GlucoseChange],
        recency_interval: timedelta,
    ) -> Optional[GlucoseChange]:
        if not discrepancies_summed:
            self.total_glucose_correction_effect = None
            return None
        current = discrepancies_summed[-1]
        if starting_at.start_date - current.end_date > recency_interval:
            self.total_glucose_correction_effect = None
            raise GlucoseTooOldError(current.end_date)
        return current

    def _velocity(self, correction: float, current: GlucoseChange, grouping_interval: timedelta) -> float:
        span = max(current.end_date - current.start_date, grouping_interval)
        return correction / minutes(span)

    def compute_effect(
        self,
        starting_at: GlucoseValue,
        discrepancies_summed: Sequence[GlucoseChange],
        recency_interval: timedelta,
        insulin_sensitivity_schedule: Optional[InsulinSensitivitySchedule] = None,
        basal_rate_schedule: Optional[BasalRateSchedule] = None,
        correction_range_schedule: Optional[GlucoseRangeSchedule] = None,
        grouping_interval: timedelta = timedelta(minutes=30),
    ) -> List[GlucoseEffect]:
        raise NotImplementedError


class StandardRetrospectiveCorrection(RetrospectiveCorrection):
    retrospection_interval = timedelta(minutes=30)

    def compute_effect(
        self,
        starting_at,
        discrepancies_summed,
        recency_interval,
        insulin_sensitivity_schedule=None,
        basal_rate_schedule=None,
        correction_range_schedule=None,
        grouping_interval=timedelta(minutes=30),
    ):
        current = self._current_discrepancy(starting_at, discrepancies_summed, recency_interval)
        if current is None:
            return []
        value = current.quantity.mgdl
        self.total_glucose_correction_effect = GlucoseQuantity.mg_dl(value)
        velocity = self._velocity(value, current, grouping_interval)
        logger.debug("Standard RC: discrepancy %.2f mg/dL, velocity %.3f mg/dL/min", value, velocity)
        return decay_effect(starting_at, velocity, self.effect_duration, self.delta)


class IntegralRetrospectiveCorrection(RetrospectiveCorrection):
    retrospection_interval = timedelta(minutes=180)

    current_discrepancy_gain = 1.0
    persistent_discrepancy_gain = 2.0
    correction_time_constant = timedelta(minutes=60)
    differential_gain = 2.0
    maximum_correction_effect_duration = timedelta(minutes=180)
    # discrepancies smaller than this break a run
    minimum_discrepancy = 0.1

    def __init__(self, effect_duration: timedelta = timedelta(minutes=60), delta: timedelta = timedelta(minutes=5)):
        super().__init__(effect_duration, delta)
        self.integral_correction_effect_duration: Optional[timedelta] = None
        self.proportional_correction = 0.0
        self.integral_correction = 0.0
        self.differential_correction = 0.0

    @property
    def integral_forget(self) -> float:
        return exp(-minutes(self.delta) / minutes(self.correction_time_constant))

    @property
    def integral_gain(self) -> float:
        forget = self.integral_forget
        return ((1 - forget) / forget) * (self.persistent_discrepancy_gain - self.current_discrepancy_gain)

    @property
    def proportional_gain(self) -> float:
        return self.current_discrepancy_gain - self.integral_gain

    def _recent_run(
        self,
        starting_at: GlucoseValue,
        discrepancies_summed: Sequence[GlucoseChange],
        recency_interval: timedelta,
    ) -> List[float]:
        """Values of the contiguous same-signed run ending at the current discrepancy, oldest first."""
        current = discrepancies_summed[-1]
        current_value = current.quantity.mgdl
        retrospection_start = starting_at.start_date - self.retrospection_interval
        run = []
        next_discrepancy = current
        for past in reversed(discrepancies_summed):
            if past.end_date < retrospection_start:
                break
            value = past.quantity.mgdl
            same_sign = (value >= 0) == (current_value >= 0)
            if (
                same_sign
                and next_discrepancy.end_date - past.end_date <= recency_interval
                and abs(value) >= self.minimum_discrepancy
            ):
                run.append(value)
                next_discrepancy = past
            else:
                break
        return list(reversed(run))

    def compute_effect(
        self,
        starting_at,
        discrepancies_summed,
        recency_interval,
        insulin_sensitivity_schedule=None,
        basal_rate_schedule=None,
        correction_range_schedule=None,
        grouping_interval=timedelta(minutes=30),
    ):
        current = self._current_discrepancy(starting_at, discrepancies_summed, recency_interval)
        if current is None:
            self.integral_correction_effect_duration = None
            return []
        current_value = current.quantity.mgdl

        if insulin_sensitivity_schedule is None or basal_rate_schedule is None or correction_range_schedule is None:
            # fall back to the standard response
            self.total_glucose_correction_effect = GlucoseQuantity.mg_dl(current_value)
            self.integral_correction_effect_duration = self.effect_duration
            velocity = self._velocity(current_value, current, grouping_interval)
            return decay_effect(starting_at, velocity, self.effect_duration, self.delta)

        run = self._recent_run(starting_at, discrepancies_summed, recency_interval)

        integral = 0.0
        effect_minutes = minutes(self.effect_duration) - 2.0 * minutes(self.delta)
        for value in run:
            integral = self.integral_forget * integral + self.integral_gain * value
            effect_minutes += 2.0 * minutes(self.delta)

        date = starting_at.start_date
        sensitivity = insulin_sensitivity_schedule.value_at(date).mgdl
        basal_rate = basal_rate_schedule.value_at(date)
        correction_range = correction_range_schedule.value_at(date)
        glucose = starting_at.quantity.mgdl
        zero_temp_effect = abs(sensitivity * basal_rate)
        positive_limit = min(
            max(glucose - correction_range.max_value.mgdl, 0.5 * zero_temp_effect),
            4.0 * zero_temp_effect,
        )
        negative_limit = -max(10.0, glucose - correction_range.min_value.mgdl)
        integral = min(max(integral, negative_limit), positive_limit)

        differential = 0.0
        if len(run) > 1:
            differential = current_value - run[-2]

        self.proportional_correction = self.proportional_gain * current_value
        self.integral_correction = integral
        self.differential_correction = self.differential_gain * differential
        total = self.proportional_correction + self.integral_correction + self.differential_correction

        effect_minutes = min(
            max(effect_minutes, minutes(self.effect_duration)),
            minutes(self.maximum_correction_effect_duration),
        )
        self.integral_correction_effect_duration = timedelta(minutes=effect_minutes)
        self.total_glucose_correction_effect = GlucoseQuantity.mg_dl(total)

        velocity = self._velocity(total, current, grouping_interval)
        logger.debug(
            "Integral RC: P=%.2f I=%.2f D=%.2f over %.0f min",
            self.proportional_correction,
            self.integral_correction,
            self.differential_correction,
            effect_minutes,
        )
        return decay_effect(starting_at, velocity, self.integral_correction_effect_duration, self.delta)


def retrospective_correction(integral: bool = False, delta: timedelta = timedelta(minutes=5)) -> RetrospectiveCorrection:
    if integral:
        return IntegralRetrospectiveCorrection(delta=delta)
    return StandardRetrospectiveCorrection(delta=delta)
