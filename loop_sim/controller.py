"""
LoopController: closed-loop SimGlucose controller driven by the forecast core.

Each ``policy`` step:
- records the CGM reading and any announced meal into the in-memory stores,
- runs one ``LoopDataManager`` cycle,
- enacts the temp basal (and automatic bolus) recommendation,
- records what was delivered so the next cycle sees it.

Simplifications vs a pump-connected loop:
- Pump commands always succeed and are reconciled immediately.
- Meals reported by the scenario are entered as carb entries at the step
  they are eaten, with the default absorption time.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import asyncio
import logging

import pandas as pd
from simglucose.controller.base import Action, Controller

from loop_logic.config import AlgorithmConfig
from loop_logic.insulin import insulin_model
from loop_logic.models import DoseEntry, GlucoseValue, StoredCarbEntry
from loop_logic.schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
)
from loop_logic.settings import LoopSettings
from loop_logic.units import GlucoseQuantity

from .data_manager import DosingDecision, LoopDataManager
from .stores import InMemoryCarbStore, InMemoryDoseStore, InMemoryGlucoseStore

logger = logging.getLogger(__name__)


def settings_from_profile(profile: Dict[str, Any], config: Optional[AlgorithmConfig] = None) -> LoopSettings:
    """Build a settings snapshot from a flat therapy profile.

    Keys: current_basal (U/hr), sens (mg/dL/U), carb_ratio (g/U), min_bg /
    max_bg (mg/dL), max_basal (U/hr), max_bolus (U), suspend_threshold (mg/dL).
    """
    basal = float(profile.get("current_basal", 1.0))
    min_bg = float(profile.get("min_bg", 100.0))
    max_bg = float(profile.get("max_bg", max(min_bg, 110.0)))
    return LoopSettings(
        basal_rate_schedule=BasalRateSchedule.constant(basal),
        insulin_sensitivity_schedule=InsulinSensitivitySchedule.mg_dl(float(profile.get("sens", 50.0))),
        carb_ratio_schedule=CarbRatioSchedule.constant(float(profile.get("carb_ratio", 10.0))),
        glucose_target_range_schedule=GlucoseRangeSchedule.mg_dl(min_bg, max_bg),
        maximum_basal_rate_per_hour=float(profile.get("max_basal", 4.0 * basal)),
        maximum_bolus=float(profile.get("max_bolus", 10.0)),
        suspend_threshold=GlucoseQuantity.mg_dl(float(profile.get("suspend_threshold", 70.0))),
        dosing_enabled=bool(profile.get("dosing_enabled", True)),
        config=config or AlgorithmConfig(),
    )


class LoopController(Controller):
    def __init__(
        self,
        profile: Dict[str, Any],
        config: Optional[AlgorithmConfig] = None,
        start_time: Optional[datetime] = None,
        max_log_size: int = 300,
    ):
        self.profile = dict(profile)
        self._config = config
        self._start_time = start_time
        self._sample_time_min = 5.0
        self._max_log_size = int(max_log_size)
        self._log = deque(maxlen=self._max_log_size)
        self._build()

    def _build(self):
        self.glucose_store = InMemoryGlucoseStore()
        self.dose_store = InMemoryDoseStore()
        self.carb_store = InMemoryCarbStore()
        self.manager = LoopDataManager(
            self.glucose_store,
            self.dose_store,
            self.carb_store,
            settings_from_profile(self.profile, self._config),
            model=insulin_model(self.profile.get("insulin_model", "rapid_acting_adult")),
        )
        self._now: Optional[datetime] = self._start_time

    @property
    def settings(self) -> LoopSettings:
        return self.manager.settings

    def _record_inputs(self, glucose: float, carbs: float):
        self.glucose_store.add(GlucoseValue(self._now, GlucoseQuantity.mg_dl(glucose)))
        if carbs > 0:
            logger.debug(f"Meal of {carbs:.1f} g recorded at {self._now}")
            self.carb_store.add(StoredCarbEntry(start_date=self._now, grams=carbs))

    def _enact(self, decision: DosingDecision) -> tuple:
        """(basal U/hr, bolus U) to deliver this step; records the doses."""
        scheduled = self.settings.basal_rate_schedule.value_at(self._now)
        recommendation = decision.temp_basal_recommendation
        if recommendation is not None:
            if recommendation.is_cancel:
                self.dose_store.set_temp_basal(DoseEntry.temp_basal(self._now, self._now, scheduled))
            else:
                self.dose_store.set_temp_basal(
                    DoseEntry.temp_basal(
                        self._now, self._now + recommendation.duration, recommendation.units_per_hour
                    )
                )
        running = self.dose_store.last_temp_basal(self._now)
        if running is not None and running.end_date > self._now:
            rate = running.units_per_hour
        else:
            rate = scheduled

        bolus = float(decision.automatic_bolus or 0.0)
        if bolus > 0:
            self.dose_store.add(DoseEntry.bolus(self._now, bolus))
        self.dose_store.pump_status_date = self._now
        return rate, bolus

    def policy(self, observation, reward, done, **info):
        glucose = float(observation.CGM)
        sample_time = float(info.get("sample_time") or self._sample_time_min)
        self._sample_time_min = sample_time
        if self._now is None:
            self._now = info.get("time") or datetime(2025, 1, 1, 0, 0)
        # Meal is reported as a g/min flow over the step
        carbs = float(info.get("meal", 0.0)) * sample_time

        self._record_inputs(glucose, carbs)
        if self.dose_store.pump_status_date is None:
            self.dose_store.pump_status_date = self._now

        decision = asyncio.run(self.manager.update(self._now))
        rate, bolus = self._enact(decision)

        eventual = decision.predicted_glucose[-1].quantity.mgdl if decision.predicted_glucose else None
        self._log.append(
            {
                "time": pd.Timestamp(self._now),
                "cgm": glucose,
                "iob": decision.insulin_on_board,
                "cob": decision.carbs_on_board,
                "eventual_bg": eventual,
                "basal_u_per_hr": rate,
                "bolus_u": bolus,
                "error": str(decision.errors[0]) if decision.errors else None,
            }
        )

        # SimGlucose expects U/min
        action = Action(basal=rate / 60.0, bolus=bolus / max(1.0, sample_time))
        self._now = self._now + timedelta(minutes=sample_time)
        return action

    def reset(self):
        self._log.clear()
        self._build()
        return None

    def get_decision_log(self) -> Optional[pd.DataFrame]:
        """Per-step decisions; keeps the last ``max_log_size`` steps."""
        if not self._log:
            return None
        df = pd.DataFrame(list(self._log)).set_index("time")
        df.index.name = "Time"
        return df
