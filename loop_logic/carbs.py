"""
Carbohydrate absorption and its glucose effect.

Two ways to turn carb entries into a glucose effect:

- static: each entry absorbs along its absorption model over its declared
  (or default) absorption time;
- dynamic: observed insulin counteraction effects are attributed to the
  active entries, and whatever has not been observed absorbs linearly over
  the estimated remaining time.

In the dynamic case entries share the observed effect, so entries whose
windows overlap must be computed together; the effect of a set of entries is
not the sum of their individual effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union
import logging

from .config import AlgorithmConfig
from .models import (
    GlucoseEffect,
    GlucoseEffectVelocity,
    NewCarbEntry,
    StoredCarbEntry,
    date_grid,
    minutes,
)
from .schedule import CarbRatioSchedule, InsulinSensitivitySchedule

logger = logging.getLogger(__name__)

CarbEntry = Union[NewCarbEntry, StoredCarbEntry]


# ---------------------------------------------------------------------------
# Absorption models
# ---------------------------------------------------------------------------

class LinearAbsorption:
    name = "linear"

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        return min(1.0, max(0.0, percent_time))

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        return min(1.0, max(0.0, percent_absorption))


class ParabolicAbsorption:
    """Scheiner GI curve: rate rises linearly to the midpoint, then falls."""

    name = "parabolic"

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        if t <= 0:
            return 0.0
        if t <= 0.5:
            return 2.0 * t * t
        if t < 1.0:
            return -1.0 + 2.0 * t * (2.0 - t)
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        p = percent_absorption
        if p <= 0:
            return 0.0
        if p <= 0.5:
            return (p / 2.0) ** 0.5
        if p < 1.0:
            return 1.0 - ((1.0 - p) / 2.0) ** 0.5
        return 1.0


class PiecewiseLinearAbsorption:
    """Rate rises over the first 15% of the time, holds, then falls from 50%."""

    name = "piecewise_linear"
    percent_end_of_rise = 0.15
    percent_start_of_fall = 0.5

    @property
    def scale(self) -> float:
        return 2.0 / (1.0 + self.percent_start_of_fall - self.percent_end_of_rise)

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        rise = self.percent_end_of_rise
        fall = self.percent_start_of_fall
        scale = self.scale
        if t <= 0:
            return 0.0
        if t < rise:
            return 0.5 * scale * t * t / rise
        if t < fall:
            return scale * (t - 0.5 * rise)
        if t < 1.0:
            since_fall = t - fall
            return scale * (
                fall - 0.5 * rise + since_fall * (1.0 - 0.5 * since_fall / (1.0 - fall))
            )
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        # Inverse by bisection; the forward curve is monotonic.
        if percent_absorption <= 0:
            return 0.0
        if percent_absorption >= 1:
            return 1.0
        low, high = 0.0, 1.0
        for _ in range(50):
            mid = (low + high) / 2.0
            if self.percent_absorption_at_percent_time(mid) < percent_absorption:
                low = mid
            else:
                high = mid
        return (low + high) / 2.0


ABSORPTION_MODELS = {
    "linear": LinearAbsorption(),
    "parabolic": ParabolicAbsorption(),
    "piecewise_linear": PiecewiseLinearAbsorption(),
}


def absorption_model(name: str):
    try:
        return ABSORPTION_MODELS[name]
    except KeyError:
        raise ValueError(f"Unknown carb absorption model {name!r}") from None


def _absorption_time(entry: CarbEntry, config: AlgorithmConfig) -> timedelta:
    return entry.absorption_time or config.default_absorption_time


def _carb_sensitivity_factor(
    entry: CarbEntry,
    carb_ratios: CarbRatioSchedule,
    insulin_sensitivities: InsulinSensitivitySchedule,
) -> float:
    """mg/dL rise per gram at the entry's start."""
    return insulin_sensitivities.value_at(entry.start_date).mgdl / carb_ratios.value_at(entry.start_date)


# ---------------------------------------------------------------------------
# Static effects
# ---------------------------------------------------------------------------

def absorbed_carbs(
    entry: CarbEntry, at: datetime, absorption_time: timedelta, delay: timedelta, model
) -> float:
    elapsed = at - entry.start_date - delay
    return entry.grams * model.percent_absorption_at_percent_time(elapsed / absorption_time)


def glucose_effects(
    entries: Sequence[CarbEntry],
    carb_ratios: CarbRatioSchedule,
    insulin_sensitivities: InsulinSensitivitySchedule,
    start: datetime,
    end: Optional[datetime] = None,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> List[GlucoseEffect]:
    """Cumulative glucose rise (mg/dL) of ``entries`` along their absorption curves."""
    if not entries:
        return []
    model = absorption_model(config.carb_absorption_model)
    if end is None:
        end = max(
            entry.start_date + _absorption_time(entry, config) + config.carb_effect_delay
            for entry in entries
        )
    effects = []
    for date in date_grid(start, end, config.delta):
        value = 0.0
        for entry in entries:
            csf = _carb_sensitivity_factor(entry, carb_ratios, insulin_sensitivities)
            value += csf * absorbed_carbs(
                entry, date, _absorption_time(entry, config), config.carb_effect_delay, model
            )
        effects.append(GlucoseEffect.mg_dl(date, value))
    return effects


# ---------------------------------------------------------------------------
# Dynamic effects
# ---------------------------------------------------------------------------

@dataclass
class CarbStatusBuilder:
    """Accumulates the observed absorption of one entry."""

    entry: CarbEntry
    carb_sensitivity_factor: float
    initial_absorption_time: timedelta
    maximum_absorption_time: timedelta
    delay: timedelta
    observed_grams: float = 0.0
    observations: List[tuple] = field(default_factory=list)  # (end date, cumulative grams)
    last_observation_end: Optional[datetime] = None

    @property
    def minimum_absorption_rate(self) -> float:
        """grams per minute needed to finish within the maximum absorption time."""
        return self.entry.grams / minutes(self.maximum_absorption_time)

    @property
    def remaining_grams(self) -> float:
        return max(0.0, self.entry.grams - self.observed_grams)

    def is_active(self, date: datetime) -> bool:
        return (
            self.entry.start_date <= date < self.entry.start_date + self.maximum_absorption_time
            and self.remaining_grams > 0
        )

    def add_observation(self, grams: float, end_date: datetime):
        self.observed_grams += grams
        self.observations.append((end_date, self.observed_grams))
        self.last_observation_end = end_date

    def observed_at(self, date: datetime) -> float:
        """Cumulative observed grams by ``date`` (piecewise linear)."""
        previous_date, previous_grams = self.entry.start_date, 0.0
        for end_date, grams in self.observations:
            if date <= end_date:
                span = (end_date - previous_date).total_seconds()
                if span <= 0:
                    return grams
                fraction = max(0.0, (date - previous_date).total_seconds() / span)
                return previous_grams + fraction * (grams - previous_grams)
            previous_date, previous_grams = end_date, grams
        return previous_grams

    def estimated_time_remaining(
        self, at: datetime, model, adaptive: bool, standby_fraction: float
    ) -> timedelta:
        elapsed = at - self.entry.start_date
        if self.remaining_grams <= 0:
            return timedelta(0)
        static_remaining = max(self.initial_absorption_time - elapsed, timedelta(0))
        if adaptive and elapsed > self.initial_absorption_time * standby_fraction and self.observed_grams > 0:
            progress = self.observed_grams / self.entry.grams
            percent_time = model.percent_time_at_percent_absorption(progress)
            if percent_time > 0:
                estimate = elapsed / percent_time
                remaining = estimate - elapsed
            else:
                remaining = static_remaining
        else:
            remaining = static_remaining
        # never slower than the minimum rate, never past the maximum absorption time
        slowest = timedelta(minutes=self.remaining_grams / self.minimum_absorption_rate)
        latest = max(self.entry.start_date + self.maximum_absorption_time - at, timedelta(0))
        remaining = min(max(remaining, timedelta(0)), slowest, latest)
        if remaining <= timedelta(0):
            # whatever is left absorbs within one more interval
            remaining = timedelta(minutes=5)
        return remaining


def map_carb_entries(
    entries: Sequence[CarbEntry],
    effect_velocities: Sequence[GlucoseEffectVelocity],
    carb_ratios: CarbRatioSchedule,
    insulin_sensitivities: InsulinSensitivitySchedule,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> List[CarbStatusBuilder]:
    """Attribute observed counteraction effects to carb entries.

    Each interval's positive effect is shared among the entries active at its
    start, proportionally to their minimum absorption rates; an entry never
    absorbs more than its declared grams, and the overflow goes to the oldest
    entries that still have carbs left.
    """
    builders = [
        CarbStatusBuilder(
            entry=entry,
            carb_sensitivity_factor=_carb_sensitivity_factor(entry, carb_ratios, insulin_sensitivities),
            initial_absorption_time=_absorption_time(entry, config) * config.initial_absorption_time_overrun,
            maximum_absorption_time=_absorption_time(entry, config) * config.absorption_time_overrun,
            delay=config.carb_effect_delay,
        )
        for entry in sorted(entries, key=lambda e: e.start_date)
    ]

    for velocity in effect_velocities:
        active = [b for b in builders if b.is_active(velocity.start_date)]
        if not active:
            continue
        effect_value = max(0.0, velocity.effect.mgdl)
        if effect_value <= 0:
            for builder in active:
                builder.add_observation(0.0, velocity.end_date)
            continue
        total_rate = sum(b.minimum_absorption_rate * b.carb_sensitivity_factor for b in active)
        leftover = 0.0
        allocations = {}
        for builder in active:
            share = effect_value * builder.minimum_absorption_rate * builder.carb_sensitivity_factor / total_rate
            grams = min(builder.remaining_grams, share / builder.carb_sensitivity_factor)
            allocations[id(builder)] = grams
            leftover += share - grams * builder.carb_sensitivity_factor
        for builder in active:
            if leftover <= 0:
                break
            spare = builder.remaining_grams - allocations[id(builder)]
            if spare <= 0:
                continue
            extra = min(spare, leftover / builder.carb_sensitivity_factor)
            allocations[id(builder)] += extra
            leftover -= extra * builder.carb_sensitivity_factor
        for builder in active:
            builder.add_observation(allocations[id(builder)], velocity.end_date)

    return builders


def _dynamic_absorbed(builder: CarbStatusBuilder, date: datetime, model, config: AlgorithmConfig) -> float:
    last = builder.last_observation_end
    if last is None:
        return absorbed_carbs(
            builder.entry,
            date,
            builder.initial_absorption_time,
            builder.delay,
            model,
        )
    if date <= last:
        return builder.observed_at(date)
    if builder.remaining_grams <= 0:
        return builder.observed_grams
    remaining_time = builder.estimated_time_remaining(
        last, model,
        config.adaptive_absorption_rate_enabled,
        config.adaptive_rate_standby_interval_fraction,
    )
    fraction = min(1.0, (date - last) / remaining_time)
    return builder.observed_grams + builder.remaining_grams * fraction


def dynamic_glucose_effects(
    entries: Sequence[CarbEntry],
    effect_velocities: Sequence[GlucoseEffectVelocity],
    carb_ratios: CarbRatioSchedule,
    insulin_sensitivities: InsulinSensitivitySchedule,
    start: datetime,
    end: Optional[datetime] = None,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> List[GlucoseEffect]:
    """Cumulative glucose rise (mg/dL) using observed absorption where available."""
    if not entries:
        return []
    model = absorption_model(config.carb_absorption_model)
    builders = map_carb_entries(entries, effect_velocities, carb_ratios, insulin_sensitivities, config)
    if end is None:
        end = max(b.entry.start_date + b.maximum_absorption_time for b in builders) + config.carb_effect_delay
    effects = []
    for date in date_grid(start, end, config.delta):
        value = sum(
            b.carb_sensitivity_factor * _dynamic_absorbed(b, date, model, config)
            for b in builders
            if date >= b.entry.start_date
        )
        effects.append(GlucoseEffect.mg_dl(date, value))
    logger.debug("Dynamic carb effect: %d entries, %d velocities", len(builders), len(effect_velocities))
    return effects


def carbs_on_board(
    entries: Sequence[CarbEntry],
    at: datetime,
    effect_velocities: Optional[Sequence[GlucoseEffectVelocity]] = None,
    carb_ratios: Optional[CarbRatioSchedule] = None,
    insulin_sensitivities: Optional[InsulinSensitivitySchedule] = None,
    config: AlgorithmConfig = AlgorithmConfig(),
) -> float:
    """Grams not yet absorbed at ``at``.

    Uses observed absorption when velocities and schedules are given.
    """
    model = absorption_model(config.carb_absorption_model)
    active = [entry for entry in entries if entry.start_date <= at]
    if not active:
        return 0.0
    if effect_velocities is None or carb_ratios is None or insulin_sensitivities is None:
        return sum(
            entry.grams
            - absorbed_carbs(entry, at, _absorption_time(entry, config), config.carb_effect_delay, model)
            for entry in active
        )
    builders = map_carb_entries(active, effect_velocities, carb_ratios, insulin_sensitivities, config)
    return sum(b.entry.grams - _dynamic_absorbed(b, at, model, config) for b in builders)
