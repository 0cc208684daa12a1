"""
Dose recommendation from a glucose forecast.

Pipeline:
1. ``insulin_correction`` walks the prediction over the insulin effect
   duration and classifies it (suspend / entirely below range / in range /
   above range), computing the correction units for the worst point.
2. The correction becomes a temp basal (``as_temp_basal``), a manual bolus
   (``as_manual_bolus``) or an automatic partial bolus.
3. ``TempBasalRecommendation.if_necessary`` suppresses commands that would
   not change delivery.

Safety: any predicted value at or below the suspend threshold yields a zero
rate and no bolus.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Sequence
import logging
import sys

from .errors import RecommendationExpiredError
from .insulin import ExponentialInsulinModel
from .models import DoseEntry, DoseType, PredictedGlucoseValue, minutes
from .schedule import BasalRateSchedule, GlucoseRangeSchedule
from .units import GlucoseQuantity

logger = logging.getLogger(__name__)

# Double ulpOfOne: rates are already pump-quantized, so equality is near exact.
RATE_TOLERANCE = sys.float_info.epsilon

Rounder = Callable[[float], float]


def round_to_increment(value: float, increment: float) -> float:
    """Round down to the pump's delivery increment (never rounds up)."""
    if increment <= 0:
        return max(0.0, value)
    steps = int((value + 1e-9) / increment)
    return max(0.0, steps * increment)


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TempBasalRecommendation:
    units_per_hour: float
    duration: timedelta

    @classmethod
    def cancel(cls) -> "TempBasalRecommendation":
        return cls(0.0, timedelta(0))

    @property
    def is_cancel(self) -> bool:
        return self.units_per_hour == 0 and self.duration == timedelta(0)

    def matches_rate(self, units_per_hour: float) -> bool:
        return abs(self.units_per_hour - units_per_hour) < RATE_TOLERANCE

    def if_necessary(
        self,
        at: datetime,
        neutral_basal_rate: float,
        last_temp_basal: Optional[DoseEntry],
        continuation_interval: timedelta,
        neutral_basal_rate_matches_pump: bool,
    ) -> Optional["TempBasalRecommendation"]:
        """This recommendation, ``cancel()``, or None when no command is needed."""
        if (
            last_temp_basal is not None
            and last_temp_basal.type == DoseType.TEMP_BASAL
            and last_temp_basal.end_date > at
        ):
            if (
                self.matches_rate(last_temp_basal.units_per_hour)
                and last_temp_basal.end_date - at > continuation_interval
            ):
                return None
            if self.matches_rate(neutral_basal_rate) and neutral_basal_rate_matches_pump:
                return TempBasalRecommendation.cancel()
        elif self.matches_rate(neutral_basal_rate) and neutral_basal_rate_matches_pump:
            return None
        return self


class BolusNoticeKind(str, Enum):
    GLUCOSE_BELOW_SUSPEND_THRESHOLD = "glucoseBelowSuspendThreshold"
    CURRENT_GLUCOSE_BELOW_TARGET = "currentGlucoseBelowTarget"
    PREDICTED_GLUCOSE_BELOW_TARGET = "predictedGlucoseBelowTarget"


@dataclass(frozen=True)
class BolusRecommendationNotice:
    kind: BolusNoticeKind
    glucose: PredictedGlucoseValue


@dataclass(frozen=True)
class BolusRecommendation:
    amount: float
    pending_insulin: float
    notice: Optional[BolusRecommendationNotice] = None


@dataclass(frozen=True)
class AutomaticDoseRecommendation:
    basal_adjustment: Optional[TempBasalRecommendation]
    bolus_units: Optional[float] = None


# ---------------------------------------------------------------------------
# Correction
# ---------------------------------------------------------------------------

class CorrectionKind(str, Enum):
    SUSPEND = "suspend"
    ENTIRELY_BELOW_RANGE = "entirelyBelowRange"
    IN_RANGE = "inRange"
    ABOVE_RANGE = "aboveRange"


@dataclass(frozen=True)
class InsulinCorrection:
    kind: CorrectionKind
    min_glucose: Optional[PredictedGlucoseValue] = None
    min_target: Optional[GlucoseQuantity] = None
    units: float = 0.0

    def as_temp_basal(
        self,
        neutral_basal_rate: float,
        max_basal_rate: float,
        duration: timedelta,
        rate_rounder: Optional[Rounder] = None,
    ) -> TempBasalRecommendation:
        rate = self.units / (minutes(duration) / 60.0)
        if self.kind != CorrectionKind.SUSPEND:
            rate += neutral_basal_rate
        rate = min(max_basal_rate, max(0.0, rate))
        if rate_rounder is not None:
            rate = rate_rounder(rate)
        return TempBasalRecommendation(rate, duration)

    @property
    def bolus_notice(self) -> Optional[BolusRecommendationNotice]:
        if self.kind == CorrectionKind.SUSPEND:
            return BolusRecommendationNotice(BolusNoticeKind.GLUCOSE_BELOW_SUSPEND_THRESHOLD, self.min_glucose)
        if self.kind == CorrectionKind.ENTIRELY_BELOW_RANGE:
            return BolusRecommendationNotice(BolusNoticeKind.PREDICTED_GLUCOSE_BELOW_TARGET, self.min_glucose)
        if (
            self.kind == CorrectionKind.ABOVE_RANGE
            and self.units > 0
            and self.min_glucose.quantity < self.min_target
        ):
            return BolusRecommendationNotice(BolusNoticeKind.PREDICTED_GLUCOSE_BELOW_TARGET, self.min_glucose)
        return None

    def as_manual_bolus(
        self,
        pending_insulin: float,
        max_bolus: float,
        volume_rounder: Optional[Rounder] = None,
    ) -> BolusRecommendation:
        units = self.units - pending_insulin if self.kind == CorrectionKind.ABOVE_RANGE else 0.0
        units = min(max_bolus, max(0.0, units))
        if volume_rounder is not None:
            units = volume_rounder(units)
        return BolusRecommendation(units, pending_insulin, self.bolus_notice)

    def as_partial_bolus(
        self,
        partial_application_factor: float,
        max_bolus: float,
        volume_rounder: Optional[Rounder] = None,
    ) -> float:
        units = self.units if self.kind == CorrectionKind.ABOVE_RANGE else 0.0
        partial = units * partial_application_factor
        if volume_rounder is not None:
            partial = volume_rounder(partial)
            max_bolus = volume_rounder(max_bolus)
        return min(max(0.0, partial), max_bolus)


def _target_glucose_value(percent_effect_duration: float, min_value: float, max_value: float) -> float:
    # hold min_value for the first half, then ramp to max_value
    use_min_until = 0.5
    if percent_effect_duration <= use_min_until:
        return min_value
    if percent_effect_duration >= 1:
        return max_value
    slope = (max_value - min_value) / (1 - use_min_until)
    return min_value + slope * (percent_effect_duration - use_min_until)


def insulin_correction(
    prediction: Sequence[PredictedGlucoseValue],
    correction_range: GlucoseRangeSchedule,
    at: datetime,
    suspend_threshold: GlucoseQuantity,
    sensitivity: GlucoseQuantity,
    model: ExponentialInsulinModel,
) -> Optional[InsulinCorrection]:
    """Classify the prediction and size the correction; None when nothing is in range."""
    valid_end = at + model.effect_duration
    sensitivity_value = sensitivity.mgdl
    suspend_value = suspend_threshold.mgdl
    effect_minutes = minutes(model.effect_duration)

    min_glucose = None
    eventual_glucose = None
    min_correction_units = None

    for value in prediction:
        if not (at <= value.start_date <= valid_end):
            continue
        if value.quantity.mgdl <= suspend_value:
            return InsulinCorrection(CorrectionKind.SUSPEND, min_glucose=value)

        if min_glucose is None or value.quantity < min_glucose.quantity:
            min_glucose = value
        eventual_glucose = value

        elapsed = value.start_date - at
        target = _target_glucose_value(
            minutes(elapsed) / effect_minutes,
            suspend_value,
            correction_range.value_at(value.start_date).average.mgdl,
        )
        percent_effected = 1 - model.percent_effect_remaining(elapsed)
        effected_sensitivity = max(RATE_TOLERANCE, percent_effected * sensitivity_value)
        units = (value.quantity.mgdl - target) / effected_sensitivity
        if min_correction_units is None or units < min_correction_units:
            min_correction_units = units

    if eventual_glucose is None or min_glucose is None:
        return None

    min_targets = correction_range.value_at(min_glucose.start_date)
    eventual_targets = correction_range.value_at(eventual_glucose.start_date)

    if min_glucose.quantity < min_targets.min_value and eventual_glucose.quantity < eventual_targets.min_value:
        elapsed = min_glucose.start_date - at
        percent_effected = max(RATE_TOLERANCE, 1 - model.percent_effect_remaining(elapsed))
        units = (min_glucose.quantity.mgdl - min_targets.average.mgdl) / (sensitivity_value * percent_effected)
        return InsulinCorrection(
            CorrectionKind.ENTIRELY_BELOW_RANGE,
            min_glucose=min_glucose,
            min_target=min_targets.min_value,
            units=units,
        )
    if eventual_glucose.quantity > eventual_targets.max_value and min_correction_units is not None:
        return InsulinCorrection(
            CorrectionKind.ABOVE_RANGE,
            min_glucose=min_glucose,
            min_target=eventual_targets.min_value,
            units=min_correction_units,
        )
    return InsulinCorrection(CorrectionKind.IN_RANGE, min_glucose=min_glucose)


def recommended_temp_basal(
    prediction: Sequence[PredictedGlucoseValue],
    correction_range: GlucoseRangeSchedule,
    at: datetime,
    suspend_threshold: GlucoseQuantity,
    sensitivity: GlucoseQuantity,
    model: ExponentialInsulinModel,
    basal_rates: BasalRateSchedule,
    max_basal_rate: float,
    last_temp_basal: Optional[DoseEntry],
    rate_rounder: Optional[Rounder] = None,
    is_basal_rate_schedule_override_active: bool = False,
    duration: timedelta = timedelta(minutes=30),
    continuation_interval: timedelta = timedelta(minutes=11),
) -> Optional[TempBasalRecommendation]:
    correction = insulin_correction(prediction, correction_range, at, suspend_threshold, sensitivity, model)
    if correction is None:
        return None
    scheduled = basal_rates.value_at(at)
    if (
        correction.kind == CorrectionKind.ABOVE_RANGE
        and correction.min_glucose.quantity < correction.min_target
    ):
        # predicted to dip below range before rising: do not raise basal
        max_basal_rate = scheduled
    temp = correction.as_temp_basal(scheduled, max_basal_rate, duration, rate_rounder)
    logger.debug("Correction %s (%.3f U) -> %.3f U/hr", correction.kind.value, correction.units, temp.units_per_hour)
    return temp.if_necessary(
        at,
        neutral_basal_rate=scheduled,
        last_temp_basal=last_temp_basal,
        continuation_interval=continuation_interval,
        neutral_basal_rate_matches_pump=not is_basal_rate_schedule_override_active,
    )


def recommended_bolus(
    prediction: Sequence[PredictedGlucoseValue],
    correction_range: GlucoseRangeSchedule,
    at: datetime,
    suspend_threshold: GlucoseQuantity,
    sensitivity: GlucoseQuantity,
    model: ExponentialInsulinModel,
    pending_insulin: float,
    max_bolus: float,
    volume_rounder: Optional[Rounder] = None,
) -> BolusRecommendation:
    """Manual bolus in units, never negative, never above ``max_bolus``."""
    correction = insulin_correction(prediction, correction_range, at, suspend_threshold, sensitivity, model)
    if correction is None:
        return BolusRecommendation(0.0, pending_insulin)
    bolus = correction.as_manual_bolus(pending_insulin, max_bolus, volume_rounder)

    # first prediction is the current glucose
    if (
        bolus.notice is not None
        and bolus.notice.kind == BolusNoticeKind.PREDICTED_GLUCOSE_BELOW_TARGET
        and prediction
        and prediction[0].quantity < correction_range.value_at(prediction[0].start_date).min_value
    ):
        bolus = BolusRecommendation(
            bolus.amount,
            bolus.pending_insulin,
            BolusRecommendationNotice(BolusNoticeKind.CURRENT_GLUCOSE_BELOW_TARGET, prediction[0]),
        )
    return bolus


# ---------------------------------------------------------------------------
# Automatic bolus
# ---------------------------------------------------------------------------

class ConstantApplicationFactorStrategy:
    def __init__(self, factor: float = 0.4):
        self.factor = factor

    def dosing_factor(self, glucose: GlucoseQuantity, correction_range: GlucoseRangeSchedule, at: datetime) -> float:
        return self.factor


class GlucoseBasedApplicationFactorStrategy:
    """Scales the factor from 0.2 near the correction range up to 0.8 at 200 mg/dL."""

    min_factor = 0.2
    max_factor = 0.8
    min_glucose_delta = 10.0
    max_glucose = 200.0

    def dosing_factor(self, glucose: GlucoseQuantity, correction_range: GlucoseRangeSchedule, at: datetime) -> float:
        lower = correction_range.value_at(at).min_value.mgdl + self.min_glucose_delta
        value = glucose.mgdl
        if value <= lower:
            return self.min_factor
        if value >= self.max_glucose:
            return self.max_factor
        fraction = (value - lower) / (self.max_glucose - lower)
        return self.min_factor + fraction * (self.max_factor - self.min_factor)


def recommended_automatic_dose(
    prediction: Sequence[PredictedGlucoseValue],
    correction_range: GlucoseRangeSchedule,
    at: datetime,
    suspend_threshold: GlucoseQuantity,
    sensitivity: GlucoseQuantity,
    model: ExponentialInsulinModel,
    basal_rates: BasalRateSchedule,
    max_automatic_bolus: float,
    partial_application_factor: float,
    last_temp_basal: Optional[DoseEntry],
    volume_rounder: Optional[Rounder] = None,
    rate_rounder: Optional[Rounder] = None,
    is_basal_rate_schedule_override_active: bool = False,
    duration: timedelta = timedelta(minutes=30),
    continuation_interval: timedelta = timedelta(minutes=11),
) -> Optional[AutomaticDoseRecommendation]:
    """Partial correction bolus plus a temp basal that never exceeds the neutral rate."""
    correction = insulin_correction(prediction, correction_range, at, suspend_threshold, sensitivity, model)
    if correction is None:
        return None
    scheduled = basal_rates.value_at(at)
    bolus_units = correction.as_partial_bolus(partial_application_factor, max_automatic_bolus, volume_rounder)
    temp = correction.as_temp_basal(scheduled, scheduled, duration, rate_rounder)
    temp = temp.if_necessary(
        at,
        neutral_basal_rate=scheduled,
        last_temp_basal=last_temp_basal,
        continuation_interval=continuation_interval,
        neutral_basal_rate_matches_pump=not is_basal_rate_schedule_override_active,
    )
    return AutomaticDoseRecommendation(basal_adjustment=temp, bolus_units=bolus_units)


def check_recommendation_fresh(recommendation_date: datetime, now: datetime, recency_interval: timedelta):
    """Raise if a recommendation is too old to enact."""
    if now - recommendation_date > recency_interval:
        raise RecommendationExpiredError(recommendation_date)
