"""
Value records consumed and produced by the pipeline, plus date-grid helpers.

All records are immutable and built fresh for each loop cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Tuple, TypeVar
import uuid

from .errors import InvalidDataError
from .units import GlucoseQuantity

_ONE_US = timedelta(microseconds=1)


# ---------------------------------------------------------------------------
# Date grid
# ---------------------------------------------------------------------------

def _epoch_for(date: datetime) -> datetime:
    return datetime(1970, 1, 1, tzinfo=date.tzinfo)


def date_floored(date: datetime, interval: timedelta) -> datetime:
    epoch = _epoch_for(date)
    us = (date - epoch) // _ONE_US
    step = interval // _ONE_US
    return epoch + timedelta(microseconds=us - us % step)


def date_ceiled(date: datetime, interval: timedelta) -> datetime:
    floored = date_floored(date, interval)
    return floored if floored == date else floored + interval


def simulation_date_range(
    start: datetime, end: datetime, delta: timedelta
) -> Tuple[datetime, datetime]:
    """Grid-aligned [start, end] covering the requested interval."""
    return date_floored(start, delta), date_ceiled(end, delta)


def date_grid(start: datetime, end: datetime, delta: timedelta) -> List[datetime]:
    grid_start, grid_end = simulation_date_range(start, end, delta)
    dates = []
    date = grid_start
    while date <= grid_end:
        dates.append(date)
        date += delta
    return dates


def minutes(interval: timedelta) -> float:
    return interval.total_seconds() / 60.0


# ---------------------------------------------------------------------------
# Glucose
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GlucoseValue:
    start_date: datetime
    quantity: GlucoseQuantity
    provenance: str = "cgm"
    is_calibration: bool = False


@dataclass(frozen=True)
class PredictedGlucoseValue:
    start_date: datetime
    quantity: GlucoseQuantity


@dataclass(frozen=True)
class GlucoseEffect:
    """Cumulative glucose change from one source, up to ``start_date``."""

    start_date: datetime
    quantity: GlucoseQuantity

    @classmethod
    def mg_dl(cls, start_date: datetime, value: float) -> "GlucoseEffect":
        return cls(start_date, GlucoseQuantity.mg_dl(value))


@dataclass(frozen=True)
class GlucoseEffectVelocity:
    """Rate of glucose change over [start_date, end_date], in mg/dL per minute."""

    start_date: datetime
    end_date: datetime
    mgdl_per_minute: float

    def __post_init__(self):
        if self.end_date <= self.start_date:
            raise InvalidDataError(
                f"velocity ends ({self.end_date}) before it starts ({self.start_date})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def effect(self) -> GlucoseQuantity:
        """Total glucose change over the interval."""
        return GlucoseQuantity.mg_dl(self.mgdl_per_minute * minutes(self.duration))


@dataclass(frozen=True)
class GlucoseChange:
    """Glucose change accumulated over [start_date, end_date]."""

    start_date: datetime
    end_date: datetime
    quantity: GlucoseQuantity

    def appending(self, other: "GlucoseChange") -> "GlucoseChange":
        return GlucoseChange(
            start_date=min(self.start_date, other.start_date),
            end_date=max(self.end_date, other.end_date),
            quantity=self.quantity + other.quantity,
        )


# ---------------------------------------------------------------------------
# Insulin delivery
# ---------------------------------------------------------------------------

class DoseType(str, Enum):
    BASAL = "basal"
    TEMP_BASAL = "tempBasal"
    BOLUS = "bolus"
    SUSPEND = "suspend"


@dataclass(frozen=True)
class DoseEntry:
    """Insulin delivery record.

    Boluses carry ``units``; basal and temp basal carry ``units_per_hour`` over
    [start_date, end_date]. ``scheduled_basal_rate`` is filled in by
    ``insulin.annotated()`` so temp basals can be netted against the schedule.
    """

    type: DoseType
    start_date: datetime
    end_date: datetime
    units: Optional[float] = None
    units_per_hour: Optional[float] = None
    scheduled_basal_rate: Optional[float] = None
    sync_identifier: Optional[str] = None

    def __post_init__(self):
        if self.end_date < self.start_date:
            raise InvalidDataError(f"dose ends ({self.end_date}) before it starts ({self.start_date})")
        if self.units is None and self.units_per_hour is None:
            raise InvalidDataError("dose needs units or units_per_hour")

    @classmethod
    def bolus(cls, date: datetime, units: float, **kwargs) -> "DoseEntry":
        return cls(DoseType.BOLUS, date, date, units=float(units), **kwargs)

    @classmethod
    def temp_basal(
        cls, start: datetime, end: datetime, units_per_hour: float, **kwargs
    ) -> "DoseEntry":
        return cls(DoseType.TEMP_BASAL, start, end, units_per_hour=float(units_per_hour), **kwargs)

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def delivered_units(self) -> float:
        """Programmed units over the whole dose."""
        if self.units is not None:
            return self.units
        rate = 0.0 if self.type == DoseType.SUSPEND else self.units_per_hour
        return rate * self.duration.total_seconds() / 3600.0

    @property
    def net_basal_units(self) -> float:
        """Units relative to the scheduled basal, when the dose is annotated."""
        if self.type == DoseType.BOLUS:
            return self.delivered_units
        if self.scheduled_basal_rate is None:
            return self.delivered_units
        hours = self.duration.total_seconds() / 3600.0
        rate = 0.0 if self.type == DoseType.SUSPEND else (self.units_per_hour or 0.0)
        return (rate - self.scheduled_basal_rate) * hours

    def trimmed(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> "DoseEntry":
        """Restrict the dose to [start, end]; boluses are kept whole or dropped."""
        new_start = self.start_date if start is None else max(start, self.start_date)
        new_end = self.end_date if end is None else min(end, self.end_date)
        new_end = max(new_start, new_end)
        if self.type == DoseType.BOLUS:
            return self
        return replace(self, start_date=new_start, end_date=new_end)


# ---------------------------------------------------------------------------
# Carbohydrates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NewCarbEntry:
    """Carb entry not yet persisted (e.g. a what-if entry in the bolus screen)."""

    start_date: datetime
    grams: float
    absorption_time: Optional[timedelta] = None
    food_type: Optional[str] = None


@dataclass(frozen=True)
class StoredCarbEntry:
    """Persisted carb entry; may be replaced by an edit."""

    start_date: datetime
    grams: float
    absorption_time: Optional[timedelta] = None
    food_type: Optional[str] = None
    sync_identifier: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_created_date: Optional[datetime] = None

    def as_new_entry(self) -> NewCarbEntry:
        return NewCarbEntry(self.start_date, self.grams, self.absorption_time, self.food_type)


# ---------------------------------------------------------------------------
# Timeline helpers
# ---------------------------------------------------------------------------

T = TypeVar("T")


def filter_date_range(
    effects: Iterable[T], start: Optional[datetime], end: Optional[datetime]
) -> List[T]:
    """Keep entries whose ``start_date`` lies within [start, end]."""
    result = []
    for effect in effects:
        if start is not None and effect.start_date < start:
            continue
        if end is not None and effect.start_date > end:
            continue
        result.append(effect)
    return result


def interpolated_effect(effects: List[GlucoseEffect], date: datetime) -> Optional[float]:
    """Linear interpolation of a cumulative effect timeline at ``date`` (mg/dL).

    Returns None when ``date`` lies outside the timeline.
    """
    if not effects or date < effects[0].start_date or date > effects[-1].start_date:
        return None
    for previous, current in zip(effects, effects[1:]):
        if previous.start_date <= date <= current.start_date:
            span = (current.start_date - previous.start_date).total_seconds()
            if span <= 0:
                return current.quantity.mgdl
            fraction = (date - previous.start_date).total_seconds() / span
            return previous.quantity.mgdl + fraction * (current.quantity.mgdl - previous.quantity.mgdl)
    return effects[-1].quantity.mgdl
