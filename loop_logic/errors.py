"""
Errors raised by the dosing pipeline.

The core raises; the orchestration layer (``loop_sim.data_manager``) catches
``LoopError`` and records it on the dosing decision, so a failed cycle never
produces a recommendation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum


class ConfigurationDetail(str, Enum):
    GENERAL_SETTINGS = "generalSettings"
    BASAL_RATE = "basalRateSchedule"
    INSULIN_SENSITIVITY = "insulinSensitivitySchedule"
    CARB_RATIO = "carbRatioSchedule"
    CORRECTION_RANGE = "glucoseTargetRangeSchedule"
    MAXIMUM_BASAL_RATE = "maximumBasalRatePerHour"
    MAXIMUM_BOLUS = "maximumBolus"
    SUSPEND_THRESHOLD = "suspendThreshold"


class MissingDataDetail(str, Enum):
    GLUCOSE = "glucose"
    MOMENTUM_EFFECT = "momentumEffect"
    CARB_EFFECT = "carbEffect"
    INSULIN_EFFECT = "insulinEffect"
    PREDICTED_GLUCOSE = "predictedGlucose"


class LoopError(Exception):
    """Base class for every error the dosing pipeline can signal."""


class StaleDataError(LoopError):
    """Input exists but is older than the recency interval."""

    kind = "stale"

    def __init__(self, date: datetime):
        self.date = date
        super().__init__(f"{self.kind}: {date.isoformat()}")


class GlucoseTooOldError(StaleDataError):
    kind = "glucoseTooOld"


class PumpDataTooOldError(StaleDataError):
    kind = "pumpDataTooOld"


class RecommendationExpiredError(StaleDataError):
    kind = "recommendationExpired"


class ConfigurationError(LoopError):
    def __init__(self, detail: ConfigurationDetail):
        self.detail = detail
        super().__init__(f"configurationError: {detail.value}")


class MissingDataError(LoopError):
    def __init__(self, detail: MissingDataDetail):
        self.detail = detail
        super().__init__(f"missingDataError: {detail.value}")


class InvalidDataError(LoopError):
    def __init__(self, details: str):
        self.details = details
        super().__init__(f"invalidData: {details}")


class OverrideContractError(ValueError):
    """A schedule override was assigned to the wrong slot."""
