"""
Time-of-day schedules and temporary overrides.

A schedule is an ordered list of (start offset from local midnight, value)
items that wraps at 24h. A schedule may carry one ``TemporaryScheduleOverride``;
while the override is active, ``value_at`` resolves the overridden value.
Applying an override replaces any override already applied, so applying the
same override twice is the same as applying it once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Generic, List, Optional, Sequence, Tuple, TypeVar
import bisect
import copy
import uuid

from .units import GlucoseQuantity, GlucoseRange, GlucoseUnit

V = TypeVar("V")

DAY = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------

class OverrideContext(str, Enum):
    PRE_MEAL = "preMeal"
    LEGACY_WORKOUT = "legacyWorkout"
    PRESET = "preset"
    CUSTOM = "custom"


class EnactTrigger(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class OverrideSettings:
    target_range: Optional[GlucoseRange] = None
    insulin_needs_scale_factor: Optional[float] = None

    def __post_init__(self):
        if self.insulin_needs_scale_factor is not None and self.insulin_needs_scale_factor <= 0:
            raise ValueError(
                f"insulin_needs_scale_factor ({self.insulin_needs_scale_factor}) must be > 0"
            )

    @property
    def effective_insulin_needs_scale_factor(self) -> float:
        return 1.0 if self.insulin_needs_scale_factor is None else self.insulin_needs_scale_factor


@dataclass(frozen=True)
class TemporaryScheduleOverride:
    context: OverrideContext
    settings: OverrideSettings
    start_date: datetime
    duration: Optional[timedelta] = None  # None: indefinite
    enact_trigger: EnactTrigger = EnactTrigger.LOCAL
    sync_identifier: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_indefinite(self) -> bool:
        return self.duration is None

    @property
    def end_date(self) -> datetime:
        if self.duration is None:
            return datetime.max.replace(tzinfo=self.start_date.tzinfo)
        return self.start_date + self.duration

    def is_active(self, at: datetime) -> bool:
        return self.start_date <= at < self.end_date

    def has_finished(self, at: datetime) -> bool:
        return at >= self.end_date


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleItem(Generic[V]):
    start_time: timedelta  # offset from local midnight
    value: V


@dataclass(frozen=True)
class AbsoluteScheduleValue(Generic[V]):
    start_date: datetime
    end_date: datetime
    value: V


class DailySchedule(Generic[V]):
    """Piecewise-constant daily schedule.

    Subclasses define how an override changes a value through
    ``_apply_override``; the set of schedule kinds is closed.
    """

    def __init__(
        self,
        items: Sequence[Tuple[timedelta, V]],
        timezone: Optional[tzinfo] = None,
        override: Optional[TemporaryScheduleOverride] = None,
    ):
        normalized = [
            item if isinstance(item, ScheduleItem) else ScheduleItem(item[0], item[1])
            for item in items
        ]
        if not normalized:
            raise ValueError("A schedule needs at least one item")
        if normalized[0].start_time != timedelta(0):
            raise ValueError("The first schedule item must start at midnight")
        for previous, current in zip(normalized, normalized[1:]):
            if current.start_time <= previous.start_time:
                raise ValueError("Schedule items must be in increasing start time order")
        if normalized[-1].start_time >= DAY:
            raise ValueError("Schedule items must start within 24 hours")
        self.items: List[ScheduleItem[V]] = normalized
        self.timezone = timezone
        self.override = override
        self._starts = [item.start_time for item in normalized]

    @classmethod
    def constant(cls, value: V, timezone: Optional[tzinfo] = None):
        return cls([(timedelta(0), value)], timezone=timezone)

    def _local(self, date: datetime) -> datetime:
        if self.timezone is not None and date.tzinfo is not None:
            return date.astimezone(self.timezone)
        return date

    def _offset(self, date: datetime) -> timedelta:
        local = self._local(date)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return local - midnight

    def scheduled_value_at(self, date: datetime) -> V:
        """Value from the daily items only, ignoring any override."""
        index = bisect.bisect_right(self._starts, self._offset(date)) - 1
        return self.items[index].value

    def value_at(self, date: datetime) -> V:
        value = self.scheduled_value_at(date)
        if self.override is not None and self.override.is_active(date):
            return self._apply_override(value, self.override.settings)
        return value

    def _apply_override(self, value: V, settings: OverrideSettings) -> V:
        return value

    def _boundaries(self, start: datetime, end: datetime) -> List[datetime]:
        day = self._local(start).replace(hour=0, minute=0, second=0, microsecond=0)
        local_end = self._local(end)
        boundaries = []
        while day <= local_end:
            for item in self.items:
                boundary = day + item.start_time
                if start < boundary < end:
                    boundaries.append(boundary)
            day += DAY
        if self.override is not None:
            for boundary in (self.override.start_date, self.override.end_date):
                if start < boundary < end:
                    boundaries.append(boundary)
        return sorted(set(boundaries))

    def between(self, start: datetime, end: datetime) -> List[AbsoluteScheduleValue[V]]:
        """Absolute, resolved segments covering [start, end]."""
        if end <= start:
            return [AbsoluteScheduleValue(start, end, self.value_at(start))]
        edges = [start] + self._boundaries(start, end) + [end]
        return [
            AbsoluteScheduleValue(segment_start, segment_end, self.value_at(segment_start))
            for segment_start, segment_end in zip(edges, edges[1:])
        ]

    def applying_override(self, override: Optional[TemporaryScheduleOverride]):
        """Copy of this schedule resolving ``override`` (replacing any previous one)."""
        overridden = copy.copy(self)
        overridden.override = override
        return overridden

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DailySchedule) or type(other) is not type(self):
            return NotImplemented
        return (
            self.items == other.items
            and self.timezone == other.timezone
            and self.override == other.override
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({[(i.start_time, i.value) for i in self.items]!r})"


class BasalRateSchedule(DailySchedule[float]):
    """Scheduled basal rate in U/hr."""

    def _apply_override(self, value: float, settings: OverrideSettings) -> float:
        return value * settings.effective_insulin_needs_scale_factor


class InsulinSensitivitySchedule(DailySchedule[GlucoseQuantity]):
    """Glucose drop per unit of insulin."""

    def _apply_override(self, value: GlucoseQuantity, settings: OverrideSettings) -> GlucoseQuantity:
        return value / settings.effective_insulin_needs_scale_factor

    @classmethod
    def mg_dl(cls, value: float, timezone: Optional[tzinfo] = None) -> "InsulinSensitivitySchedule":
        return cls.constant(GlucoseQuantity.mg_dl(value), timezone)


class CarbRatioSchedule(DailySchedule[float]):
    """Grams of carbohydrate covered by one unit of insulin."""

    def _apply_override(self, value: float, settings: OverrideSettings) -> float:
        return value / settings.effective_insulin_needs_scale_factor


class GlucoseRangeSchedule(DailySchedule[GlucoseRange]):
    """Correction (target) range."""

    def _apply_override(self, value: GlucoseRange, settings: OverrideSettings) -> GlucoseRange:
        return settings.target_range if settings.target_range is not None else value

    @classmethod
    def mg_dl(cls, lower: float, upper: float, timezone: Optional[tzinfo] = None) -> "GlucoseRangeSchedule":
        return cls.constant(GlucoseRange.mg_dl(lower, upper), timezone)

    @property
    def unit(self) -> GlucoseUnit:
        return self.items[0].value.min_value.unit
