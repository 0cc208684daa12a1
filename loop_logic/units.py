"""
Glucose quantities with explicit units.

Glucose concentrations are never passed around as bare floats: every value
carries its unit and conversions go through `GlucoseQuantity.to()`.
Internally all math is done in mg/dL.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import total_ordering

# mg/dL per mmol/L (molar mass of glucose 180.1559 g/mol)
MGDL_PER_MMOLL = 18.01559


class GlucoseUnit(str, Enum):
    MG_DL = "mg/dL"
    MMOL_L = "mmol/L"


def convert(value: float, from_unit: GlucoseUnit, to_unit: GlucoseUnit) -> float:
    if from_unit == to_unit:
        return float(value)
    if from_unit == GlucoseUnit.MMOL_L:
        return float(value) * MGDL_PER_MMOLL
    return float(value) / MGDL_PER_MMOLL


@total_ordering
@dataclass(frozen=True)
class GlucoseQuantity:
    value: float
    unit: GlucoseUnit = GlucoseUnit.MG_DL

    @classmethod
    def mg_dl(cls, value: float) -> "GlucoseQuantity":
        return cls(float(value), GlucoseUnit.MG_DL)

    @classmethod
    def mmol_l(cls, value: float) -> "GlucoseQuantity":
        return cls(float(value), GlucoseUnit.MMOL_L)

    @property
    def mgdl(self) -> float:
        return convert(self.value, self.unit, GlucoseUnit.MG_DL)

    def value_in(self, unit: GlucoseUnit) -> float:
        return convert(self.value, self.unit, unit)

    def to(self, unit: GlucoseUnit) -> "GlucoseQuantity":
        return GlucoseQuantity(self.value_in(unit), unit)

    def __add__(self, other: "GlucoseQuantity") -> "GlucoseQuantity":
        return GlucoseQuantity(self.value + other.value_in(self.unit), self.unit)

    def __sub__(self, other: "GlucoseQuantity") -> "GlucoseQuantity":
        return GlucoseQuantity(self.value - other.value_in(self.unit), self.unit)

    def __mul__(self, factor: float) -> "GlucoseQuantity":
        return GlucoseQuantity(self.value * float(factor), self.unit)

    __rmul__ = __mul__

    def __truediv__(self, factor: float) -> "GlucoseQuantity":
        return GlucoseQuantity(self.value / float(factor), self.unit)

    def __lt__(self, other: "GlucoseQuantity") -> bool:
        return self.mgdl < other.mgdl

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GlucoseQuantity):
            return NotImplemented
        return self.mgdl == other.mgdl

    def __hash__(self) -> int:
        return hash(self.mgdl)

    def __str__(self) -> str:
        return f"{self.value:g} {self.unit.value}"


@dataclass(frozen=True)
class GlucoseRange:
    """Closed glucose range, e.g. a correction (target) range."""

    min_value: GlucoseQuantity
    max_value: GlucoseQuantity

    def __post_init__(self):
        if self.max_value < self.min_value:
            raise ValueError(f"Invalid range: {self.min_value} > {self.max_value}")

    @classmethod
    def mg_dl(cls, lower: float, upper: float) -> "GlucoseRange":
        return cls(GlucoseQuantity.mg_dl(lower), GlucoseQuantity.mg_dl(upper))

    @property
    def average(self) -> GlucoseQuantity:
        unit = self.min_value.unit
        return GlucoseQuantity(
            (self.min_value.value + self.max_value.value_in(unit)) / 2.0, unit
        )

    def contains(self, quantity: GlucoseQuantity) -> bool:
        return self.min_value <= quantity <= self.max_value

    def to(self, unit: GlucoseUnit) -> "GlucoseRange":
        return GlucoseRange(self.min_value.to(unit), self.max_value.to(unit))
