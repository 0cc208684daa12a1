"""
Glucose trend math: momentum, decay curves and the merge of effect timelines
into a single predicted trajectory.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Sequence
import logging

import numpy as np

from .models import (
    GlucoseEffect,
    GlucoseValue,
    PredictedGlucoseValue,
    date_ceiled,
    date_floored,
    minutes,
)
from .units import GlucoseQuantity

logger = logging.getLogger(__name__)


def _is_continuous(samples: Sequence[GlucoseValue], interval: timedelta) -> bool:
    span = abs(samples[-1].start_date - samples[0].start_date)
    return span < interval * len(samples)


def linear_momentum_effect(
    samples: Sequence[GlucoseValue],
    duration: timedelta = timedelta(minutes=30),
    delta: timedelta = timedelta(minutes=5),
) -> List[GlucoseEffect]:
    """Linear extrapolation of the recent glucose trend.

    ``samples`` should already be limited to the momentum data interval. At
    least three continuous, single-provenance, non-calibration samples are
    needed; otherwise no momentum is produced.
    """
    samples = sorted(samples, key=lambda s: s.start_date)
    if len(samples) <= 2:
        return []
    if any(s.is_calibration for s in samples):
        return []
    if len({s.provenance for s in samples}) > 1:
        return []
    if not _is_continuous(samples, delta):
        logger.debug("No momentum: %d samples are not continuous", len(samples))
        return []

    last = samples[-1]
    x = np.array([(s.start_date - last.start_date).total_seconds() for s in samples])
    y = np.array([s.quantity.mgdl for s in samples])
    slope, _ = np.polyfit(x, y, 1)
    if not np.isfinite(slope):
        return []

    start = date_floored(last.start_date, delta)
    end = date_ceiled(last.start_date + duration, delta)
    effects = []
    date = start
    while date <= end:
        elapsed = max(0.0, (date - last.start_date).total_seconds())
        effects.append(GlucoseEffect.mg_dl(date, float(elapsed * slope)))
        date += delta
    return effects


def decay_effect(
    glucose: GlucoseValue,
    rate_mgdl_per_minute: float,
    duration: timedelta,
    delta: timedelta = timedelta(minutes=5),
) -> List[GlucoseEffect]:
    """Effect of a velocity that decays linearly to zero over ``duration``.

    Starts at zero at the (floored) glucose date.
    """
    start = date_floored(glucose.start_date, delta)
    end = start + duration
    intercept = rate_mgdl_per_minute
    slope = -intercept / (minutes(duration) - minutes(delta))
    effects = [GlucoseEffect.mg_dl(start, 0.0)]
    value = 0.0
    date = start + delta
    # the rate reaches zero at end - delta; no point is emitted at end itself
    while date < end:
        value += (intercept + slope * minutes(date - start)) * minutes(delta)
        effects.append(GlucoseEffect.mg_dl(date, value))
        date += delta
    return effects


def predict_glucose(
    starting_at: GlucoseValue,
    momentum: Sequence[GlucoseEffect] = (),
    effects: Sequence[Sequence[GlucoseEffect]] = (),
) -> List[PredictedGlucoseValue]:
    """Layer effect deltas on the anchor glucose.

    Each timeline contributes the change between its consecutive points; the
    changes are summed per date. Momentum is blended in with a weight that
    falls linearly from 1 at the anchor to 0 at its last point.
    """
    deltas: Dict[datetime, float] = {}
    for timeline in effects:
        if not timeline:
            continue
        previous = timeline[0].quantity.mgdl
        for effect in timeline:
            value = effect.quantity.mgdl
            deltas[effect.start_date] = deltas.get(effect.start_date, 0.0) + value - previous
            previous = value

    momentum = list(momentum)
    if len(momentum) > 2:
        previous = momentum[0].quantity.mgdl
        blend_count = len(momentum) - 2
        time_delta = (momentum[1].start_date - momentum[0].start_date).total_seconds()
        momentum_offset = (starting_at.start_date - momentum[0].start_date).total_seconds()
        blend_slope = 1.0 / blend_count
        blend_offset = momentum_offset / time_delta * blend_slope
        for index, effect in enumerate(momentum):
            value = effect.quantity.mgdl
            split = min(1.0, max(0.0, (len(momentum) - index) / blend_count - blend_slope + blend_offset))
            effect_blend = (1.0 - split) * deltas.get(effect.start_date, 0.0)
            momentum_blend = split * (value - previous)
            deltas[effect.start_date] = effect_blend + momentum_blend
            previous = value

    prediction = [PredictedGlucoseValue(starting_at.start_date, starting_at.quantity)]
    for date in sorted(deltas):
        if date <= starting_at.start_date:
            continue
        last = prediction[-1].quantity
        prediction.append(PredictedGlucoseValue(date, last + GlucoseQuantity.mg_dl(deltas[date])))
    return prediction
