# Pure forecast and dosing core

from .config import AlgorithmConfig
from .errors import (
    ConfigurationDetail,
    ConfigurationError,
    GlucoseTooOldError,
    InvalidDataError,
    LoopError,
    MissingDataDetail,
    MissingDataError,
    OverrideContractError,
    PumpDataTooOldError,
    RecommendationExpiredError,
    StaleDataError,
)
from .units import GlucoseQuantity, GlucoseRange, GlucoseUnit
from .models import (
    DoseEntry,
    DoseType,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseValue,
    NewCarbEntry,
    PredictedGlucoseValue,
    StoredCarbEntry,
)
from .schedule import (
    BasalRateSchedule,
    CarbRatioSchedule,
    EnactTrigger,
    GlucoseRangeSchedule,
    InsulinSensitivitySchedule,
    OverrideContext,
    OverrideSettings,
    TemporaryScheduleOverride,
)
from .insulin import ExponentialInsulinModel, insulin_model
from .forecast import PredictionInputEffect, predict_glucose
from .retrospective import IntegralRetrospectiveCorrection, StandardRetrospectiveCorrection
from .dose import (
    BolusRecommendation,
    BolusNoticeKind,
    TempBasalRecommendation,
    recommended_bolus,
    recommended_temp_basal,
)
from .simple_bolus import recommended_insulin
from .settings import LoopSettings

__all__ = [
    "AlgorithmConfig",
    "LoopError",
    "StaleDataError",
    "GlucoseTooOldError",
    "PumpDataTooOldError",
    "RecommendationExpiredError",
    "ConfigurationDetail",
    "ConfigurationError",
    "MissingDataDetail",
    "MissingDataError",
    "InvalidDataError",
    "OverrideContractError",
    "GlucoseQuantity",
    "GlucoseRange",
    "GlucoseUnit",
    "DoseEntry",
    "DoseType",
    "GlucoseEffect",
    "GlucoseEffectVelocity",
    "GlucoseValue",
    "NewCarbEntry",
    "PredictedGlucoseValue",
    "StoredCarbEntry",
    "BasalRateSchedule",
    "CarbRatioSchedule",
    "EnactTrigger",
    "GlucoseRangeSchedule",
    "InsulinSensitivitySchedule",
    "OverrideContext",
    "OverrideSettings",
    "TemporaryScheduleOverride",
    "ExponentialInsulinModel",
    "insulin_model",
    "PredictionInputEffect",
    "predict_glucose",
    "IntegralRetrospectiveCorrection",
    "StandardRetrospectiveCorrection",
    "BolusRecommendation",
    "BolusNoticeKind",
    "TempBasalRecommendation",
    "recommended_bolus",
    "recommended_temp_basal",
    "recommended_insulin",
    "LoopSettings",
]
