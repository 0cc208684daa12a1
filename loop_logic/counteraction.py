"""
Insulin counteraction effects and retrospective discrepancies.

The counteraction effect is the part of the observed glucose change that the
modeled insulin effect does not explain. Subtracting the modeled carb effect
from it leaves the discrepancy that retrospective correction feeds back into
the forecast.
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Sequence
import logging

from .models import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseValue,
    interpolated_effect,
    minutes,
)
from .units import GlucoseQuantity

logger = logging.getLogger(__name__)


def counteraction_effects(
    samples: Sequence[GlucoseValue], insulin_effect: Sequence[GlucoseEffect]
) -> List[GlucoseEffectVelocity]:
    """Residual glucose velocity per consecutive pair of samples.

    ``velocity = (Δglucose - Δinsulin effect) / Δt`` in mg/dL/min. Pairs with a
    non-positive interval, and pairs the insulin effect does not cover, are
    skipped. An empty insulin effect (no dose history) is a zero effect.
    """
    insulin_effect = list(insulin_effect)
    no_insulin = not insulin_effect
    samples = [sample for sample in samples if not sample.is_calibration]
    velocities = []
    for start, end in zip(samples, samples[1:]):
        interval = end.start_date - start.start_date
        if interval <= timedelta(0):
            continue
        if no_insulin:
            effect_start = effect_end = 0.0
        else:
            effect_start = interpolated_effect(insulin_effect, start.start_date)
            effect_end = interpolated_effect(insulin_effect, end.start_date)
        if effect_start is None or effect_end is None:
            continue
        glucose_change = end.quantity.mgdl - start.quantity.mgdl
        effect_change = effect_end - effect_start
        velocities.append(
            GlucoseEffectVelocity(
                start_date=start.start_date,
                end_date=end.start_date,
                mgdl_per_minute=(glucose_change - effect_change) / minutes(interval),
            )
        )
    logger.debug("Counteraction: %d velocities from %d samples", len(velocities), len(samples))
    return velocities


def subtracting(
    velocities: Sequence[GlucoseEffectVelocity], effects: Sequence[GlucoseEffect]
) -> List[GlucoseEffect]:
    """Counteraction not explained by ``effects``, dated at each velocity's end.

    Where ``effects`` does not cover an interval it is taken as zero.
    """
    effects = list(effects)
    discrepancies = []
    for velocity in velocities:
        effect_start = interpolated_effect(effects, velocity.start_date)
        effect_end = interpolated_effect(effects, velocity.end_date)
        if effect_start is None or effect_end is None:
            explained = 0.0
        else:
            explained = effect_end - effect_start
        discrepancies.append(
            GlucoseEffect.mg_dl(velocity.end_date, velocity.effect.mgdl - explained)
        )
    return discrepancies


def combined_sums(effects: Sequence[GlucoseEffect], duration: timedelta) -> List[GlucoseChange]:
    """Trailing-window sums: each entry adds everything within ``duration`` before it."""
    effects = sorted(effects, key=lambda effect: effect.start_date)
    sums = []
    first = 0
    for index, effect in enumerate(effects):
        while effects[first].start_date < effect.start_date - duration:
            first += 1
        window = effects[first:index + 1]
        sums.append(
            GlucoseChange(
                start_date=window[0].start_date,
                end_date=effect.start_date,
                quantity=GlucoseQuantity.mg_dl(sum(e.quantity.mgdl for e in window)),
            )
        )
    return sums
