"""
History providers consumed by the loop data manager.

Providers are async so the data manager can fetch them concurrently; the
in-memory implementations below back the simulator controller and the tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol
import asyncio
import bisect

from loop_logic.models import DoseEntry, DoseType, GlucoseValue, StoredCarbEntry


class GlucoseProvider(Protocol):
    async def get_glucose_samples(self, start: datetime, end: Optional[datetime] = None) -> List[GlucoseValue]:
        ...


class DoseProvider(Protocol):
    async def get_doses(self, start: datetime, end: Optional[datetime] = None) -> List[DoseEntry]:
        ...

    async def get_pump_status_date(self) -> Optional[datetime]:
        ...


class CarbProvider(Protocol):
    async def get_carb_entries(self, start: datetime, end: Optional[datetime] = None) -> List[StoredCarbEntry]:
        ...


def _in_range(date: datetime, start: datetime, end: Optional[datetime]) -> bool:
    return date >= start and (end is None or date <= end)


class InMemoryGlucoseStore:
    def __init__(self, samples: Optional[List[GlucoseValue]] = None, latency: float = 0.0):
        self._samples: List[GlucoseValue] = []
        self._dates: List[datetime] = []
        # seconds each fetch yields for; lets tests interleave cycles
        self.latency = latency
        for sample in samples or []:
            self.add(sample)

    def add(self, sample: GlucoseValue):
        index = bisect.bisect_right(self._dates, sample.start_date)
        self._dates.insert(index, sample.start_date)
        self._samples.insert(index, sample)

    @property
    def latest(self) -> Optional[GlucoseValue]:
        return self._samples[-1] if self._samples else None

    async def get_glucose_samples(self, start, end=None):
        await asyncio.sleep(self.latency)
        return [s for s in self._samples if _in_range(s.start_date, start, end)]


class InMemoryDoseStore:
    def __init__(self, doses: Optional[List[DoseEntry]] = None, pump_status_date: Optional[datetime] = None):
        self._doses: List[DoseEntry] = sorted(doses or [], key=lambda d: d.start_date)
        self.pump_status_date = pump_status_date

    def add(self, dose: DoseEntry):
        self._doses.append(dose)
        self._doses.sort(key=lambda d: d.start_date)

    def set_temp_basal(self, dose: DoseEntry):
        """Record a new temp basal, ending any temp basal still running at its start."""
        for index, existing in enumerate(self._doses):
            if (
                existing.type == DoseType.TEMP_BASAL
                and existing.start_date <= dose.start_date < existing.end_date
            ):
                self._doses[index] = existing.trimmed(end=dose.start_date)
        if dose.duration.total_seconds() > 0:
            self.add(dose)

    def last_temp_basal(self, at: Optional[datetime] = None) -> Optional[DoseEntry]:
        temps = [
            d for d in self._doses
            if d.type == DoseType.TEMP_BASAL and (at is None or d.start_date <= at)
        ]
        return temps[-1] if temps else None

    async def get_doses(self, start, end=None):
        await asyncio.sleep(0)
        return [d for d in self._doses if d.end_date >= start and (end is None or d.start_date <= end)]

    async def get_pump_status_date(self):
        await asyncio.sleep(0)
        return self.pump_status_date


class InMemoryCarbStore:
    def __init__(self, entries: Optional[List[StoredCarbEntry]] = None):
        self._entries: List[StoredCarbEntry] = sorted(entries or [], key=lambda e: e.start_date)

    def add(self, entry: StoredCarbEntry):
        self._entries.append(entry)
        self._entries.sort(key=lambda e: e.start_date)

    def replace(self, old: StoredCarbEntry, new: StoredCarbEntry):
        self._entries = [e for e in self._entries if e.sync_identifier != old.sync_identifier]
        self.add(new)

    async def get_carb_entries(self, start, end=None):
        await asyncio.sleep(0)
        return [e for e in self._entries if _in_range(e.start_date, start, end)]
