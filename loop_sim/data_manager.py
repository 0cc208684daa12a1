"""
Loop data manager: one closed-loop cycle from histories to a dosing decision.

A cycle takes a settings snapshot, fetches every history it needs with a
single ``asyncio.gather`` join, then runs the synchronous core. A newer
``update`` cancels the cycle still in flight; the cancelled cycle's result is
discarded.

Errors raised by the core are caught here, logged, and recorded on the
``DosingDecision``; a failed cycle never carries a recommendation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import asyncio
import logging

from loop_logic import carbs as carb_math
from loop_logic import insulin as insulin_math
from loop_logic.counteraction import counteraction_effects
from loop_logic.dose import (
    BolusRecommendation,
    ConstantApplicationFactorStrategy,
    TempBasalRecommendation,
    check_recommendation_fresh,
    recommended_automatic_dose,
    recommended_bolus,
    recommended_temp_basal,
)
from loop_logic.errors import (
    ConfigurationDetail,
    ConfigurationError,
    LoopError,
    MissingDataDetail,
    MissingDataError,
    PumpDataTooOldError,
)
from loop_logic.forecast import (
    PredictionInputEffect,
    compute_retrospective_glucose_effect,
    predict_glucose,
)
from loop_logic.glucose_math import linear_momentum_effect
from loop_logic.insulin import ExponentialInsulinModel, insulin_model
from loop_logic.models import (
    DoseEntry,
    DoseType,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseValue,
    NewCarbEntry,
    PredictedGlucoseValue,
    StoredCarbEntry,
)
from loop_logic.retrospective import RetrospectiveCorrection, retrospective_correction
from loop_logic.settings import LoopSettings

from .stores import CarbProvider, DoseProvider, GlucoseProvider

logger = logging.getLogger(__name__)


@dataclass
class DosingDecision:
    date: datetime
    settings_version: int
    predicted_glucose: List[PredictedGlucoseValue] = field(default_factory=list)
    insulin_on_board: Optional[float] = None
    carbs_on_board: Optional[float] = None
    temp_basal_recommendation: Optional[TempBasalRecommendation] = None
    automatic_bolus: Optional[float] = None
    errors: List[LoopError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class LoopInputs:
    """Histories fetched for one cycle."""

    glucose: List[GlucoseValue]
    doses: List[DoseEntry]
    carb_entries: List[StoredCarbEntry]
    pump_status_date: Optional[datetime]


@dataclass
class LoopState:
    """Effects derived from one cycle's inputs."""

    latest_glucose: GlucoseValue
    pump_status_date: datetime
    doses: List[DoseEntry]
    insulin_effect: List[GlucoseEffect]
    insulin_effect_including_pending: List[GlucoseEffect]
    insulin_counteraction_effects: List[GlucoseEffectVelocity]
    carb_effect: List[GlucoseEffect]
    momentum_effect: List[GlucoseEffect]
    retrospective_effect: List[GlucoseEffect]
    insulin_on_board: float
    carbs_on_board: float


class LoopDataManager:
    def __init__(
        self,
        glucose_store: GlucoseProvider,
        dose_store: DoseProvider,
        carb_store: CarbProvider,
        settings: LoopSettings,
        model: Optional[ExponentialInsulinModel] = None,
    ):
        self.glucose_store = glucose_store
        self.dose_store = dose_store
        self.carb_store = carb_store
        self._settings = settings
        self.model = model or insulin_model("rapid_acting_adult")
        self.retrospective_correction: RetrospectiveCorrection = retrospective_correction(
            settings.config.integral_retrospective_correction, settings.config.delta
        )
        self.last_decision: Optional[DosingDecision] = None
        self._current_task: Optional[asyncio.Task] = None

    # -- settings -------------------------------------------------------------

    @property
    def settings(self) -> LoopSettings:
        return self._settings

    def update_settings(self, settings: LoopSettings):
        """Install a new snapshot; cycles already running keep the old one."""
        if settings.config.integral_retrospective_correction != self._settings.config.integral_retrospective_correction:
            self.retrospective_correction = retrospective_correction(
                settings.config.integral_retrospective_correction, settings.config.delta
            )
        self._settings = settings

    # -- inputs -----------------------------------------------------------------

    async def fetch_inputs(self, now: datetime, settings: LoopSettings) -> LoopInputs:
        config = settings.config
        history_start = now - config.maximum_absorption_time_interval
        glucose, doses, carb_entries, pump_status_date = await asyncio.gather(
            self.glucose_store.get_glucose_samples(history_start, now),
            self.dose_store.get_doses(history_start - self.model.effect_duration, None),
            self.carb_store.get_carb_entries(history_start, None),
            self.dose_store.get_pump_status_date(),
        )
        return LoopInputs(list(glucose), list(doses), list(carb_entries), pump_status_date)

    def _check_settings(self, settings: LoopSettings):
        required = [
            (settings.basal_rate_schedule, ConfigurationDetail.BASAL_RATE),
            (settings.insulin_sensitivity_schedule, ConfigurationDetail.INSULIN_SENSITIVITY),
            (settings.carb_ratio_schedule, ConfigurationDetail.CARB_RATIO),
            (settings.glucose_target_range_schedule, ConfigurationDetail.CORRECTION_RANGE),
        ]
        for value, detail in required:
            if value is None:
                raise ConfigurationError(detail)

    def compute_state(self, now: datetime, settings: LoopSettings, inputs: LoopInputs) -> LoopState:
        """Derive every effect timeline the forecast needs."""
        self._check_settings(settings)
        config = settings.config
        if not inputs.glucose:
            raise MissingDataError(MissingDataDetail.GLUCOSE)
        if inputs.pump_status_date is None:
            # never heard from the pump
            raise PumpDataTooOldError(datetime.min.replace(tzinfo=now.tzinfo))

        latest = inputs.glucose[-1]
        sensitivity = settings.insulin_sensitivity_schedule_applying_override
        carb_ratio = settings.carb_ratio_schedule_applying_override

        doses = insulin_math.annotated(inputs.doses, settings.basal_rate_schedule)
        effect_start = inputs.glucose[0].start_date
        insulin_effect = insulin_math.glucose_effects(
            doses, self.model, sensitivity, start=effect_start, delta=config.delta, now=now
        )
        insulin_effect_pending = insulin_math.glucose_effects(
            doses, self.model, sensitivity, start=effect_start, delta=config.delta, now=now,
            include_pending=True,
        )
        velocities = counteraction_effects(inputs.glucose, insulin_effect)

        momentum_samples = [
            sample for sample in inputs.glucose
            if sample.start_date >= latest.start_date - config.momentum_data_interval
        ]
        momentum = linear_momentum_effect(momentum_samples, config.momentum_duration, config.delta)

        retrospective_start = latest.start_date - self.retrospective_correction.retrospection_interval
        carb_effect = carb_math.dynamic_glucose_effects(
            inputs.carb_entries, velocities, carb_ratio, sensitivity,
            start=retrospective_start, config=config,
        )

        retrospective_effect: List[GlucoseEffect] = []
        if PredictionInputEffect.RETROSPECTION in settings.enabled_effects:
            retrospective_effect = compute_retrospective_glucose_effect(
                self.retrospective_correction,
                latest,
                carb_effect,
                velocities,
                sensitivity,
                settings.basal_rate_schedule_applying_override,
                settings.effective_target_range_schedule(now),
                config,
            )

        state = LoopState(
            latest_glucose=latest,
            pump_status_date=inputs.pump_status_date,
            doses=doses,
            insulin_effect=insulin_effect,
            insulin_effect_including_pending=insulin_effect_pending,
            insulin_counteraction_effects=velocities,
            carb_effect=carb_effect,
            momentum_effect=momentum,
            retrospective_effect=retrospective_effect,
            insulin_on_board=insulin_math.insulin_on_board(doses, self.model, now, config.delta),
            carbs_on_board=carb_math.carbs_on_board(
                inputs.carb_entries, now, velocities, carb_ratio, sensitivity, config
            ),
        )
        logger.debug(
            "State at %s: %d ICE, insulin %d pts, carbs %d pts, RC %d pts",
            now.isoformat(),
            len(velocities),
            len(insulin_effect),
            len(carb_effect),
            len(retrospective_effect),
        )
        return state

    def _predict(
        self,
        now: datetime,
        settings: LoopSettings,
        inputs: LoopInputs,
        state: LoopState,
        potential_bolus: Optional[DoseEntry] = None,
        potential_carb_entry: Optional[NewCarbEntry] = None,
        replacing_carb_entry: Optional[StoredCarbEntry] = None,
    ) -> List[PredictedGlucoseValue]:
        return predict_glucose(
            now,
            settings.enabled_effects,
            self.model,
            state.latest_glucose,
            state.pump_status_date,
            state.insulin_counteraction_effects,
            self.retrospective_correction,
            retrospective_glucose_effect=state.retrospective_effect,
            recent_carb_entries=inputs.carb_entries,
            insulin_effect=None,
            carb_effect=state.carb_effect,
            potential_bolus=potential_bolus,
            potential_carb_entry=potential_carb_entry,
            replacing_carb_entry=replacing_carb_entry,
            including_pending_insulin=True,
            insulin_effect_including_pending_insulin=state.insulin_effect_including_pending,
            insulin_sensitivity_schedule=settings.insulin_sensitivity_schedule_applying_override,
            insulin_sensitivity_schedule_applying_override=settings.insulin_sensitivity_schedule_applying_override,
            carb_ratio_schedule=settings.carb_ratio_schedule_applying_override,
            basal_rate_schedule=settings.basal_rate_schedule_applying_override,
            correction_range_schedule=settings.effective_target_range_schedule(now, potential_carb_entry),
            momentum_effect=state.momentum_effect,
            config=settings.config,
        )

    @staticmethod
    def _last_temp_basal(doses: List[DoseEntry], now: datetime) -> Optional[DoseEntry]:
        temps = [d for d in doses if d.type == DoseType.TEMP_BASAL and d.start_date <= now]
        return max(temps, key=lambda d: d.start_date) if temps else None

    @staticmethod
    def _pending_insulin(doses: List[DoseEntry], now: datetime) -> float:
        """Units of the running temp basal above schedule still to be delivered."""
        pending = 0.0
        for dose in doses:
            if dose.type != DoseType.TEMP_BASAL or dose.end_date <= now or dose.start_date > now:
                continue
            remaining = dose.trimmed(start=now)
            pending += remaining.net_basal_units
        return max(0.0, pending)

    # -- cycle ------------------------------------------------------------------

    def _recommend(self, now: datetime, settings: LoopSettings, state: LoopState, prediction, decision: DosingDecision):
        for value, detail in (
            (settings.maximum_basal_rate_per_hour, ConfigurationDetail.MAXIMUM_BASAL_RATE),
            (settings.maximum_bolus, ConfigurationDetail.MAXIMUM_BOLUS),
            (settings.suspend_threshold, ConfigurationDetail.SUSPEND_THRESHOLD),
        ):
            if value is None:
                raise ConfigurationError(detail)
        config = settings.config
        target = settings.effective_target_range_schedule(now)
        sensitivity = settings.insulin_sensitivity_schedule_applying_override.value_at(now)
        basal_rates = settings.basal_rate_schedule_applying_override
        last_temp = self._last_temp_basal(state.doses, now)
        override_active = settings.is_basal_rate_schedule_override_active(now)

        if config.automatic_bolus:
            factor = ConstantApplicationFactorStrategy(config.bolus_partial_application_factor).dosing_factor(
                state.latest_glucose.quantity, target, now
            )
            dose = recommended_automatic_dose(
                prediction, target, now, settings.suspend_threshold, sensitivity, self.model,
                basal_rates,
                max_automatic_bolus=settings.maximum_bolus,
                partial_application_factor=factor,
                last_temp_basal=last_temp,
                is_basal_rate_schedule_override_active=override_active,
                duration=config.temp_basal_duration,
                continuation_interval=config.continuation_interval,
            )
            if dose is not None:
                decision.temp_basal_recommendation = dose.basal_adjustment
                decision.automatic_bolus = dose.bolus_units
        else:
            decision.temp_basal_recommendation = recommended_temp_basal(
                prediction, target, now, settings.suspend_threshold, sensitivity, self.model,
                basal_rates,
                max_basal_rate=settings.maximum_basal_rate_per_hour,
                last_temp_basal=last_temp,
                is_basal_rate_schedule_override_active=override_active,
                duration=config.temp_basal_duration,
                continuation_interval=config.continuation_interval,
            )

    async def _run_cycle(self, now: datetime, settings: LoopSettings) -> DosingDecision:
        decision = DosingDecision(date=now, settings_version=settings.version)
        inputs = await self.fetch_inputs(now, settings)
        try:
            state = self.compute_state(now, settings, inputs)
            decision.insulin_on_board = state.insulin_on_board
            decision.carbs_on_board = state.carbs_on_board
            prediction = self._predict(now, settings, inputs, state)
            decision.predicted_glucose = prediction
            if settings.dosing_enabled:
                self._recommend(now, settings, state, prediction, decision)
        except LoopError as error:
            logger.error("Loop cycle at %s failed: %s", now.isoformat(), error, exc_info=True)
            decision.errors.append(error)
            decision.temp_basal_recommendation = None
            decision.automatic_bolus = None
        return decision

    async def update(self, now: datetime) -> Optional[DosingDecision]:
        """Run one cycle; returns None if a newer ``update`` superseded it."""
        settings = self._settings
        previous = self._current_task
        task = asyncio.ensure_future(self._run_cycle(now, settings))
        self._current_task = task
        if previous is not None and not previous.done():
            logger.debug("Superseding loop cycle in flight")
            previous.cancel()
        try:
            decision = await task
        except asyncio.CancelledError:
            if self._current_task is not task:
                return None
            raise
        if self._current_task is not task:
            return None
        self.last_decision = decision
        return decision

    def enactable_decision(self, now: datetime) -> Optional[DosingDecision]:
        """Last decision, if still fresh enough to enact."""
        decision = self.last_decision
        if decision is None:
            return None
        check_recommendation_fresh(decision.date, now, self._settings.config.input_data_recency_interval)
        return decision

    # -- manual bolus -------------------------------------------------------------

    async def predicted_glucose(
        self,
        now: datetime,
        potential_bolus: Optional[DoseEntry] = None,
        potential_carb_entry: Optional[NewCarbEntry] = None,
        replacing_carb_entry: Optional[StoredCarbEntry] = None,
    ) -> List[PredictedGlucoseValue]:
        """What-if forecast; core errors propagate to the caller."""
        settings = self._settings
        inputs = await self.fetch_inputs(now, settings)
        state = self.compute_state(now, settings, inputs)
        return self._predict(
            now, settings, inputs, state, potential_bolus, potential_carb_entry, replacing_carb_entry
        )

    async def recommend_manual_bolus(
        self,
        now: datetime,
        potential_carb_entry: Optional[NewCarbEntry] = None,
        replacing_carb_entry: Optional[StoredCarbEntry] = None,
    ) -> BolusRecommendation:
        settings = self._settings
        if settings.maximum_bolus is None:
            raise ConfigurationError(ConfigurationDetail.MAXIMUM_BOLUS)
        if settings.suspend_threshold is None:
            raise ConfigurationError(ConfigurationDetail.SUSPEND_THRESHOLD)
        inputs = await self.fetch_inputs(now, settings)
        state = self.compute_state(now, settings, inputs)
        prediction = self._predict(
            now, settings, inputs, state,
            potential_carb_entry=potential_carb_entry,
            replacing_carb_entry=replacing_carb_entry,
        )
        target = settings.effective_target_range_schedule(now, potential_carb_entry)
        recommendation = recommended_bolus(
            prediction,
            target,
            now,
            settings.suspend_threshold,
            settings.insulin_sensitivity_schedule_applying_override.value_at(now),
            self.model,
            pending_insulin=self._pending_insulin(state.doses, now),
            max_bolus=settings.maximum_bolus,
        )
        logger.debug("Manual bolus recommendation: %.2f U", recommendation.amount)
        return recommendation
