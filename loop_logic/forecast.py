"""
Glucose forecast: combines the enabled effect timelines into one prediction
anchored at the latest glucose value.

``predict_glucose`` is fail-fast on stale inputs: glucose or pump data older
than the recency interval raise instead of producing a prediction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Flag, auto
from typing import List, Optional, Sequence
import logging

import pandas as pd

from . import carbs as carb_math
from . import insulin as insulin_math
from .config import AlgorithmConfig
from .counteraction import combined_sums, subtracting
from .errors import (
    ConfigurationDetail,
    ConfigurationError,
    GlucoseTooOldError,
    PumpDataTooOldError,
)
from .glucose_math import predict_glucose as merge_effects
from .insulin import ExponentialInsulinModel
from .models import (
    DoseEntry,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseValue,
    NewCarbEntry,
    PredictedGlucoseValue,
    StoredCarbEntry,
    filter_date_range,
)
from .retrospective import RetrospectiveCorrection
from .schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
)

logger = logging.getLogger(__name__)

# Widens the discrepancy grouping window against bucket-boundary jitter.
RETROSPECTIVE_GROUPING_INTERVAL_MULTIPLIER = 1.01


class PredictionInputEffect(Flag):
    MOMENTUM = auto()
    CARBS = auto()
    INSULIN = auto()
    RETROSPECTION = auto()

    @classmethod
    def all(cls) -> "PredictionInputEffect":
        return cls.MOMENTUM | cls.CARBS | cls.INSULIN | cls.RETROSPECTION


def compute_retrospective_glucose_effect(
    retrospective_correction: RetrospectiveCorrection,
    starting_at: GlucoseValue,
    carb_effects: Sequence[GlucoseEffect],
    insulin_counteraction_effects: Sequence[GlucoseEffectVelocity],
    insulin_sensitivity_schedule: Optional[InsulinSensitivitySchedule] = None,
    basal_rate_schedule: Optional[BasalRateSchedule] = None,
    correction_range_schedule: Optional[GlucoseRangeSchedule] = None,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> List[GlucoseEffect]:
    retrospective_start = starting_at.start_date - retrospective_correction.retrospection_interval
    recent_effects = [
        velocity for velocity in insulin_counteraction_effects if velocity.start_date >= retrospective_start
    ]
    discrepancies = subtracting(recent_effects, carb_effects)
    summed = combined_sums(
        discrepancies,
        config.retrospective_correction_grouping_interval * RETROSPECTIVE_GROUPING_INTERVAL_MULTIPLIER,
    )
    return retrospective_correction.compute_effect(
        starting_at,
        summed,
        recency_interval=config.input_data_recency_interval,
        insulin_sensitivity_schedule=insulin_sensitivity_schedule,
        basal_rate_schedule=basal_rate_schedule,
        correction_range_schedule=correction_range_schedule,
        grouping_interval=config.retrospective_correction_grouping_interval,
    )


def _carb_effects(
    potential_carb_entry: Optional[NewCarbEntry],
    replacing_carb_entry: Optional[StoredCarbEntry],
    starting_at: GlucoseValue,
    recent_carb_entries: Optional[Sequence[StoredCarbEntry]],
    carb_effect: Optional[List[GlucoseEffect]],
    insulin_counteraction_effects: Sequence[GlucoseEffectVelocity],
    retrospective_correction: RetrospectiveCorrection,
    retrospective_glucose_effect: List[GlucoseEffect],
    carb_ratio_schedule: Optional[CarbRatioSchedule],
    insulin_sensitivity_schedule: Optional[InsulinSensitivitySchedule],
    basal_rate_schedule: Optional[BasalRateSchedule],
    correction_range_schedule: Optional[GlucoseRangeSchedule],
    config: AlgorithmConfig,
):
    """(carb effect timelines, retrospective effect) for the forecast."""
    if potential_carb_entry is None:
        return ([carb_effect] if carb_effect is not None else []), retrospective_glucose_effect

    if carb_ratio_schedule is None or insulin_sensitivity_schedule is None:
        raise ConfigurationError(ConfigurationDetail.GENERAL_SETTINGS)

    last_glucose_date = starting_at.start_date
    retrospective_start = last_glucose_date - retrospective_correction.retrospection_interval

    prospective = potential_carb_entry.start_date > last_glucose_date or not recent_carb_entries
    if prospective and replacing_carb_entry is None:
        # a future entry has nothing observed yet, so its effect is independent
        timelines = [carb_effect] if carb_effect is not None else []
        timelines.append(
            carb_math.dynamic_glucose_effects(
                [potential_carb_entry],
                insulin_counteraction_effects,
                carb_ratio_schedule,
                insulin_sensitivity_schedule,
                start=retrospective_start,
                config=config,
            )
        )
        return timelines, retrospective_glucose_effect

    entries = [
        entry
        for entry in (recent_carb_entries or [])
        if replacing_carb_entry is None or entry.sync_identifier != replacing_carb_entry.sync_identifier
    ]
    # the shared observed absorption is redistributed, so recompute together
    new_entries = [entry.as_new_entry() for entry in entries] + [potential_carb_entry]
    new_entries.sort(key=lambda entry: entry.start_date, reverse=True)
    potential_carb_effect = carb_math.dynamic_glucose_effects(
        new_entries,
        insulin_counteraction_effects,
        carb_ratio_schedule,
        insulin_sensitivity_schedule,
        start=retrospective_start,
        config=config,
    )
    retrospective_glucose_effect = compute_retrospective_glucose_effect(
        retrospective_correction,
        starting_at,
        potential_carb_effect,
        insulin_counteraction_effects,
        insulin_sensitivity_schedule,
        basal_rate_schedule,
        correction_range_schedule,
        config,
    )
    return [potential_carb_effect], retrospective_glucose_effect


def predict_glucose(
    now: datetime,
    inputs: PredictionInputEffect,
    model: ExponentialInsulinModel,
    starting_at: GlucoseValue,
    pump_status_date: datetime,
    insulin_counteraction_effects: Sequence[GlucoseEffectVelocity],
    retrospective_correction: RetrospectiveCorrection,
    retrospective_glucose_effect: Optional[List[GlucoseEffect]] = None,
    recent_carb_entries: Optional[Sequence[StoredCarbEntry]] = None,
    insulin_effect: Optional[List[GlucoseEffect]] = None,
    carb_effect: Optional[List[GlucoseEffect]] = None,
    potential_bolus: Optional[DoseEntry] = None,
    potential_carb_entry: Optional[NewCarbEntry] = None,
    replacing_carb_entry: Optional[StoredCarbEntry] = None,
    including_pending_insulin: bool = False,
    insulin_effect_including_pending_insulin: Optional[List[GlucoseEffect]] = None,
    insulin_sensitivity_schedule: Optional[InsulinSensitivitySchedule] = None,
    insulin_sensitivity_schedule_applying_override: Optional[InsulinSensitivitySchedule] = None,
    carb_ratio_schedule: Optional[CarbRatioSchedule] = None,
    basal_rate_schedule: Optional[BasalRateSchedule] = None,
    correction_range_schedule: Optional[GlucoseRangeSchedule] = None,
    momentum_effect: Optional[List[GlucoseEffect]] = None,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> List[PredictedGlucoseValue]:
    """Predicted glucose from ``starting_at`` to at least ``starting_at + model.effect_duration``.

    Raises:
        GlucoseTooOldError: ``starting_at`` is older than the recency interval.
        PumpDataTooOldError: ``pump_status_date`` is older than the recency interval.
        ConfigurationError: a what-if input needs a schedule that is missing.
    """
    recency = config.input_data_recency_interval
    if now - starting_at.start_date > recency:
        raise GlucoseTooOldError(starting_at.start_date)
    if now - pump_status_date > recency:
        raise PumpDataTooOldError(pump_status_date)

    effects: List[List[GlucoseEffect]] = []
    retrospective = list(retrospective_glucose_effect or [])

    if PredictionInputEffect.CARBS in inputs:
        carb_timelines, retrospective = _carb_effects(
            potential_carb_entry,
            replacing_carb_entry,
            starting_at,
            recent_carb_entries,
            carb_effect,
            insulin_counteraction_effects,
            retrospective_correction,
            retrospective,
            carb_ratio_schedule,
            insulin_sensitivity_schedule,
            basal_rate_schedule,
            correction_range_schedule,
            config,
        )
        effects.extend(carb_timelines)

    if PredictionInputEffect.INSULIN in inputs:
        computation_effect = insulin_effect
        if computation_effect is None and including_pending_insulin:
            computation_effect = insulin_effect_including_pending_insulin
        if computation_effect is not None:
            effects.append(computation_effect)

        if potential_bolus is not None:
            if insulin_sensitivity_schedule_applying_override is None:
                raise ConfigurationError(ConfigurationDetail.GENERAL_SETTINGS)
            earliest = now - timedelta(hours=24)
            next_effect_date = (
                insulin_counteraction_effects[-1].end_date if insulin_counteraction_effects else earliest
            )
            bolus_effect = insulin_math.glucose_effects(
                [potential_bolus],
                model,
                insulin_sensitivity_schedule_applying_override,
                delta=config.delta,
                include_pending=True,
            )
            effects.append(filter_date_range(bolus_effect, next_effect_date, None))

    momentum: List[GlucoseEffect] = []
    if PredictionInputEffect.MOMENTUM in inputs and momentum_effect is not None:
        momentum = momentum_effect

    if PredictionInputEffect.RETROSPECTION in inputs:
        effects.append(retrospective)

    prediction = merge_effects(starting_at, momentum, effects)

    # dosing needs a prediction covering the whole insulin effect duration
    final_date = starting_at.start_date + model.effect_duration
    while prediction[-1].start_date < final_date:
        last = prediction[-1]
        prediction.append(PredictedGlucoseValue(last.start_date + config.delta, last.quantity))

    logger.debug(
        "Forecast: %d points from %s, %d effect timelines",
        len(prediction),
        starting_at.start_date.isoformat(),
        len(effects),
    )
    return prediction


def prediction_frame(prediction: Sequence[PredictedGlucoseValue]) -> pd.DataFrame:
    """Prediction as a DataFrame indexed by date, glucose in mg/dL."""
    df = pd.DataFrame(
        {
            "date": [value.start_date for value in prediction],
            "glucose": [value.quantity.mgdl for value in prediction],
        }
    )
    return df.set_index("date")
