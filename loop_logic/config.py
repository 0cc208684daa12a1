"""Tunable constants of the forecast and dosing pipeline.

Author: Loop forecast contributors
License: MIT
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlgorithmConfig:
    # effect timeline spacing
    delta: timedelta = timedelta(minutes=5)
    # input data older than this (relative to now) is stale
    input_data_recency_interval: timedelta = timedelta(minutes=15)

    # retrospective correction
    retrospective_correction_enabled: bool = True
    integral_retrospective_correction: bool = False
    retrospective_correction_grouping_interval: timedelta = timedelta(minutes=30)

    # momentum
    momentum_data_interval: timedelta = timedelta(minutes=15)
    momentum_duration: timedelta = timedelta(minutes=30)

    # carbs
    fast_absorption_time: timedelta = timedelta(minutes=30)
    default_absorption_time: timedelta = timedelta(hours=3)
    slow_absorption_time: timedelta = timedelta(hours=5)
    carb_effect_delay: timedelta = timedelta(minutes=10)
    absorption_time_overrun: float = 1.5
    initial_absorption_time_overrun: float = 1.5
    adaptive_absorption_rate_enabled: bool = False
    adaptive_rate_standby_interval_fraction: float = 0.2
    maximum_absorption_time_interval: timedelta = timedelta(hours=10)
    carb_absorption_model: str = "piecewise_linear"  # linear | parabolic | piecewise_linear

    # dosing
    temp_basal_duration: timedelta = timedelta(minutes=30)
    continuation_interval: timedelta = timedelta(minutes=11)
    bolus_partial_application_factor: float = 0.4
    automatic_bolus: bool = False

    # Validation
    strict_validation: bool = False

    def __post_init__(self):
        """Validate configuration parameters.

        Validation problems are logged as a warning; set strict_validation=True
        to raise instead.
        """
        errors = []

        if self.delta <= timedelta(0):
            errors.append(f"delta ({self.delta}) must be > 0")

        if self.input_data_recency_interval <= timedelta(0):
            errors.append(
                f"input_data_recency_interval ({self.input_data_recency_interval}) must be > 0"
            )

        if self.retrospective_correction_grouping_interval < self.delta:
            errors.append(
                f"retrospective_correction_grouping_interval "
                f"({self.retrospective_correction_grouping_interval}) must be >= delta ({self.delta})"
            )

        if self.absorption_time_overrun < 1.0:
            errors.append(f"absorption_time_overrun ({self.absorption_time_overrun}) must be >= 1")

        if self.initial_absorption_time_overrun < 1.0:
            errors.append(
                f"initial_absorption_time_overrun ({self.initial_absorption_time_overrun}) must be >= 1"
            )

        if not (0 <= self.adaptive_rate_standby_interval_fraction <= 1):
            errors.append(
                f"adaptive_rate_standby_interval_fraction "
                f"({self.adaptive_rate_standby_interval_fraction}) must be in [0, 1]"
            )

        if not (0 < self.bolus_partial_application_factor <= 1):
            errors.append(
                f"bolus_partial_application_factor ({self.bolus_partial_application_factor}) "
                f"must be in (0, 1]"
            )

        if self.carb_absorption_model not in ("linear", "parabolic", "piecewise_linear"):
            errors.append(f"Unknown carb_absorption_model {self.carb_absorption_model!r}")

        if self.continuation_interval >= self.temp_basal_duration:
            errors.append(
                f"continuation_interval ({self.continuation_interval}) must be shorter "
                f"than temp_basal_duration ({self.temp_basal_duration})"
            )

        # Report or raise
        if errors:
            msg = "Invalid AlgorithmConfig parameters:\n  - " + "\n  - ".join(errors)
            if self.strict_validation:
                raise ValueError(msg)
            else:
                logger.warning(msg + "\n(Set strict_validation=True to raise errors.)")
