"""
Insulin activity: exponential action curves, insulin on board and glucose effect.

The exponential curve is the same family used by oref0 ("rapid-acting" /
"ultra-rapid"): activity rises to a peak at ``peak_activity_time`` and reaches
zero at ``action_duration``. A fixed ``delay`` precedes any activity.

Continuous deliveries (basal, temp basal) are modeled as a train of small
boluses, one per ``delta`` segment, each weighted by the fraction of the dose
delivered in that segment.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from math import exp
from typing import Dict, Iterable, List, Optional
import logging

import numpy as np

from .models import (
    DoseEntry,
    DoseType,
    GlucoseEffect,
    date_grid,
    minutes,
)
from .schedule import BasalRateSchedule, InsulinSensitivitySchedule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExponentialInsulinModel:
    action_duration: timedelta
    peak_activity_time: timedelta
    delay: timedelta = timedelta(minutes=10)

    def __post_init__(self):
        td = minutes(self.action_duration)
        tp = minutes(self.peak_activity_time)
        if not (0 < tp < td / 2.0):
            raise ValueError(
                f"peak_activity_time ({tp} min) must be within (0, action_duration/2) ({td / 2.0} min)"
            )

    @property
    def effect_duration(self) -> timedelta:
        return self.action_duration + self.delay

    def _parameters(self):
        end_min = minutes(self.action_duration)
        peak_min = minutes(self.peak_activity_time)
        tau = peak_min * (1 - peak_min / end_min) / (1 - 2 * peak_min / end_min)
        a = 2 * tau / end_min
        S = 1.0 / (1 - a + (1 + a) * exp(-end_min / tau))
        return end_min, tau, a, S

    def percent_effect_remaining(self, elapsed: timedelta) -> float:
        """Fraction of a dose's glucose-lowering effect still to come."""
        t = minutes(elapsed - self.delay)
        end_min, tau, a, S = self._parameters()
        if t <= 0:
            return 1.0
        if t >= end_min:
            return 0.0
        return 1 - S * (1 - a) * (
            ((t * t) / (tau * end_min * (1 - a)) - t / tau - 1) * exp(-t / tau) + 1
        )

    def percent_effect_remaining_array(self, elapsed_minutes: np.ndarray) -> np.ndarray:
        """Vectorized ``percent_effect_remaining`` over elapsed minutes."""
        end_min, tau, a, S = self._parameters()
        t = np.asarray(elapsed_minutes, dtype=float) - minutes(self.delay)
        tc = np.clip(t, 0.0, end_min)
        remaining = 1 - S * (1 - a) * (
            ((tc * tc) / (tau * end_min * (1 - a)) - tc / tau - 1) * np.exp(-tc / tau) + 1
        )
        remaining = np.where(t <= 0, 1.0, remaining)
        return np.where(t >= end_min, 0.0, remaining)


def _preset(duration_min: int, peak_min: int, delay_min: int = 10) -> ExponentialInsulinModel:
    return ExponentialInsulinModel(
        action_duration=timedelta(minutes=duration_min),
        peak_activity_time=timedelta(minutes=peak_min),
        delay=timedelta(minutes=delay_min),
    )


INSULIN_MODEL_PRESETS: Dict[str, ExponentialInsulinModel] = {
    "rapid_acting_adult": _preset(360, 75),
    "rapid_acting_child": _preset(360, 65),
    "fiasp": _preset(360, 55),
    "lyumjev": _preset(360, 55),
    "afrezza": _preset(300, 29),
}


def insulin_model(name: str) -> ExponentialInsulinModel:
    try:
        return INSULIN_MODEL_PRESETS[name]
    except KeyError:
        raise ValueError(
            f"Unknown insulin model {name!r}; expected one of {sorted(INSULIN_MODEL_PRESETS)}"
        ) from None


# ---------------------------------------------------------------------------
# Dose preparation
# ---------------------------------------------------------------------------

def annotated(doses: Iterable[DoseEntry], basal_schedule: BasalRateSchedule) -> List[DoseEntry]:
    """Attach the scheduled basal rate to basal/temp-basal doses.

    Doses spanning a schedule boundary are split so each piece is netted
    against the rate in force during it.
    """
    result: List[DoseEntry] = []
    for dose in doses:
        if dose.type == DoseType.BOLUS:
            result.append(dose)
            continue
        if dose.duration <= timedelta(0):
            result.append(replace(dose, scheduled_basal_rate=basal_schedule.value_at(dose.start_date)))
            continue
        for segment in basal_schedule.between(dose.start_date, dose.end_date):
            result.append(
                replace(
                    dose,
                    start_date=segment.start_date,
                    end_date=segment.end_date,
                    scheduled_basal_rate=segment.value,
                )
            )
    return result


def _delivered_until(
    doses: Iterable[DoseEntry], now: Optional[datetime], include_pending: bool
) -> List[DoseEntry]:
    if now is None or include_pending:
        return list(doses)
    delivered = []
    for dose in doses:
        if dose.start_date > now:
            continue
        delivered.append(dose.trimmed(end=now) if dose.end_date > now else dose)
    return delivered


def _segments(dose: DoseEntry, delta: timedelta):
    """(segment start, fraction of the dose's units) pairs."""
    duration = dose.duration
    if dose.type == DoseType.BOLUS or duration <= delta * 1.05:
        return [(dose.start_date, 1.0)]
    segments = []
    offset = timedelta(0)
    while offset < duration:
        length = min(delta, duration - offset)
        segments.append((dose.start_date + offset, length / duration))
        offset += delta
    return segments


def _dose_units(dose: DoseEntry, netted: bool) -> float:
    return dose.net_basal_units if netted else dose.delivered_units


# ---------------------------------------------------------------------------
# IOB and glucose effect
# ---------------------------------------------------------------------------

def insulin_on_board(
    doses: Iterable[DoseEntry],
    model: ExponentialInsulinModel,
    at: datetime,
    delta: timedelta = timedelta(minutes=5),
    include_pending: bool = False,
) -> float:
    """Units still to act at ``at``; temp basals count relative to the schedule."""
    total = 0.0
    for dose in _delivered_until(doses, at, include_pending):
        units = _dose_units(dose, netted=True)
        if units == 0:
            continue
        for segment_start, fraction in _segments(dose, delta):
            if segment_start > at and not include_pending:
                continue
            total += units * fraction * model.percent_effect_remaining(at - segment_start)
    return total


def insulin_on_board_timeline(
    doses: Iterable[DoseEntry],
    model: ExponentialInsulinModel,
    start: datetime,
    end: datetime,
    delta: timedelta = timedelta(minutes=5),
) -> List[tuple]:
    doses = list(doses)
    return [
        (date, insulin_on_board(doses, model, date, delta, include_pending=True))
        for date in date_grid(start, end, delta)
    ]


def glucose_effects(
    doses: Iterable[DoseEntry],
    model: ExponentialInsulinModel,
    insulin_sensitivity: InsulinSensitivitySchedule,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    delta: timedelta = timedelta(minutes=5),
    now: Optional[datetime] = None,
    include_pending: bool = False,
) -> List[GlucoseEffect]:
    """Cumulative glucose effect (mg/dL, negative) of ``doses`` on a ``delta`` grid.

    Each dose lowers glucose by ``units * ISF(delivery time) * (1 - remaining)``.
    Doses still running at ``now`` only count what was delivered by ``now``
    unless ``include_pending`` is set.
    """
    doses = [dose for dose in _delivered_until(doses, now, include_pending)]
    if not doses:
        return []

    if start is None:
        start = min(dose.start_date for dose in doses)
    if end is None:
        end = max(dose.end_date for dose in doses) + model.effect_duration

    dates = date_grid(start, end, delta)
    grid = np.array([(date - dates[0]).total_seconds() / 60.0 for date in dates])
    total = np.zeros(len(dates))

    for dose in doses:
        units = _dose_units(dose, netted=dose.scheduled_basal_rate is not None)
        if units == 0:
            continue
        sensitivity = insulin_sensitivity.value_at(dose.start_date).mgdl
        for segment_start, fraction in _segments(dose, delta):
            offset = (segment_start - dates[0]).total_seconds() / 60.0
            elapsed = grid - offset
            effected = 1.0 - model.percent_effect_remaining_array(elapsed)
            # nothing acts before delivery
            effected = np.where(elapsed < 0, 0.0, effected)
            total -= units * fraction * sensitivity * effected

    logger.debug("Insulin effect: %d doses over %d points", len(doses), len(dates))
    return [GlucoseEffect.mg_dl(date, float(value)) for date, value in zip(dates, total)]
