"""
Unit tests for dose recommendation.

Tests cover:
- Temp basal command suppression and cancellation
- Suspend at or below the threshold
- Correction classification (above, in, below range)
- Manual and automatic bolus sizing
- Application factor strategies
"""

import pytest
from datetime import timedelta

from loop_logic.dose import (
    BolusNoticeKind,
    ConstantApplicationFactorStrategy,
    CorrectionKind,
    GlucoseBasedApplicationFactorStrategy,
    TempBasalRecommendation,
    check_recommendation_fresh,
    insulin_correction,
    recommended_automatic_dose,
    recommended_bolus,
    recommended_temp_basal,
    round_to_increment,
)
from loop_logic.errors import RecommendationExpiredError
from loop_logic.insulin import insulin_model
from loop_logic.models import DoseEntry, PredictedGlucoseValue
from loop_logic.units import GlucoseQuantity

SUSPEND = GlucoseQuantity.mg_dl(70.0)
SENSITIVITY = GlucoseQuantity.mg_dl(50.0)
CONTINUATION = timedelta(minutes=11)


@pytest.fixture
def model():
    return insulin_model("rapid_acting_adult")


@pytest.fixture
def predicted(now):
    """Prediction over the full effect duration; later values repeat the last given."""

    def build(*values):
        values = list(values)
        values += [values[-1]] * (75 - len(values))
        return [
            PredictedGlucoseValue(now + timedelta(minutes=5 * i), GlucoseQuantity.mg_dl(v))
            for i, v in enumerate(values)
        ]

    return build


@pytest.fixture
def temp_basal(now, model, target_schedule, basal_schedule):
    def recommend(prediction, last_temp_basal=None, **kwargs):
        return recommended_temp_basal(
            prediction,
            target_schedule,
            now,
            SUSPEND,
            SENSITIVITY,
            model,
            basal_rates=basal_schedule,
            max_basal_rate=3.0,
            last_temp_basal=last_temp_basal,
            **kwargs,
        )

    return recommend


@pytest.fixture
def bolus(now, model, target_schedule):
    def recommend(prediction, pending_insulin=0.0, max_bolus=5.0):
        return recommended_bolus(
            prediction, target_schedule, now, SUSPEND, SENSITIVITY, model, pending_insulin, max_bolus
        )

    return recommend


class TestIfNecessary:
    """Commands that would not change delivery are suppressed"""

    def test_running_temp_with_same_rate(self, now):
        running = DoseEntry.temp_basal(now - timedelta(minutes=10), now + timedelta(minutes=20), 2.0)
        rec = TempBasalRecommendation(2.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, running, CONTINUATION, True) is None

    def test_running_temp_about_to_end(self, now):
        running = DoseEntry.temp_basal(now - timedelta(minutes=25), now + timedelta(minutes=5), 2.0)
        rec = TempBasalRecommendation(2.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, running, CONTINUATION, True) == rec

    def test_neutral_rate_cancels_running_temp(self, now):
        running = DoseEntry.temp_basal(now - timedelta(minutes=10), now + timedelta(minutes=20), 2.0)
        rec = TempBasalRecommendation(1.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, running, CONTINUATION, True).is_cancel

    def test_neutral_rate_without_temp(self, now):
        rec = TempBasalRecommendation(1.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, None, CONTINUATION, True) is None

    def test_expired_temp_treated_as_none(self, now):
        finished = DoseEntry.temp_basal(now - timedelta(minutes=40), now - timedelta(minutes=10), 2.0)
        rec = TempBasalRecommendation(1.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, finished, CONTINUATION, True) is None

    def test_continuation_with_ten_minute_interval(self, now):
        running = DoseEntry.temp_basal(now - timedelta(minutes=10), now + timedelta(minutes=20), 1.5)
        rec = TempBasalRecommendation(1.5, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, running, timedelta(minutes=10), True) is None

    def test_neutral_rate_cancels_temp_about_to_end(self, now):
        running = DoseEntry.temp_basal(now - timedelta(minutes=28), now + timedelta(minutes=2), 1.5)
        rec = TempBasalRecommendation(1.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, running, timedelta(minutes=10), True).is_cancel

    def test_neutral_rate_not_matching_pump(self, now):
        rec = TempBasalRecommendation(1.0, timedelta(minutes=30))
        assert rec.if_necessary(now, 1.0, None, CONTINUATION, False) == rec


class TestInsulinCorrection:
    """Classification of the prediction"""

    def test_suspend_at_threshold(self, predicted, now, model, target_schedule):
        prediction = predicted(*([120.0] * 12 + [70.0, 120.0]))
        correction = insulin_correction(prediction, target_schedule, now, SUSPEND, SENSITIVITY, model)
        assert correction.kind == CorrectionKind.SUSPEND
        assert correction.min_glucose.quantity.mgdl == 70.0

    def test_above_range_units(self, predicted, now, model, target_schedule):
        correction = insulin_correction(predicted(200.0), target_schedule, now, SUSPEND, SENSITIVITY, model)
        assert correction.kind == CorrectionKind.ABOVE_RANGE
        # eventual point: (200 - 105) / 50
        assert correction.units == pytest.approx(1.9)

    def test_in_range(self, predicted, now, model, target_schedule):
        correction = insulin_correction(predicted(105.0), target_schedule, now, SUSPEND, SENSITIVITY, model)
        assert correction.kind == CorrectionKind.IN_RANGE
        assert correction.units == 0.0

    def test_entirely_below_range(self, predicted, now, model, target_schedule):
        correction = insulin_correction(predicted(85.0), target_schedule, now, SUSPEND, SENSITIVITY, model)
        assert correction.kind == CorrectionKind.ENTIRELY_BELOW_RANGE
        assert correction.units < 0

    def test_nothing_in_window(self, predicted, now, model, target_schedule):
        prediction = predicted(120.0)
        later = now + timedelta(hours=12)
        assert insulin_correction(prediction, target_schedule, later, SUSPEND, SENSITIVITY, model) is None


class TestRecommendedTempBasal:
    def test_suspend(self, temp_basal, predicted):
        rec = temp_basal(predicted(*([120.0] * 12 + [65.0, 120.0])))
        assert rec.units_per_hour == 0.0
        assert rec.duration == timedelta(minutes=30)

    def test_high_glucose_capped_at_max(self, temp_basal, predicted):
        assert temp_basal(predicted(200.0)).units_per_hour == pytest.approx(3.0)

    def test_in_range_needs_no_command(self, temp_basal, predicted):
        assert temp_basal(predicted(105.0)) is None

    def test_below_range_zero_temp(self, temp_basal, predicted):
        assert temp_basal(predicted(85.0)).units_per_hour == 0.0

    def test_dip_below_range_holds_scheduled_rate(self, temp_basal, predicted):
        assert temp_basal(predicted(95.0, 200.0)) is None

    def test_rate_rounder(self, temp_basal, predicted):
        rec = temp_basal(predicted(140.0), rate_rounder=lambda rate: round_to_increment(rate, 0.5))
        assert rec.units_per_hour == pytest.approx(2.0)

    def test_override_active_keeps_neutral_command(self, temp_basal, predicted):
        rec = temp_basal(predicted(105.0), is_basal_rate_schedule_override_active=True)
        assert rec.units_per_hour == pytest.approx(1.0)


class TestRecommendedBolus:
    """Manual bolus sizing and notices"""

    def test_correction(self, bolus, predicted):
        rec = bolus(predicted(200.0))
        assert rec.amount == pytest.approx(1.9)
        assert rec.notice is None

    def test_clamped_to_max_bolus(self, bolus, predicted):
        assert bolus(predicted(200.0), max_bolus=1.0).amount == pytest.approx(1.0)

    def test_pending_insulin_subtracted(self, bolus, predicted):
        assert bolus(predicted(200.0), pending_insulin=0.5).amount == pytest.approx(1.4)
        assert bolus(predicted(200.0), pending_insulin=10.0).amount == 0.0

    def test_suspend_notice(self, bolus, predicted):
        rec = bolus(predicted(*([120.0] * 12 + [60.0, 200.0])))
        assert rec.amount == 0.0
        assert rec.notice.kind == BolusNoticeKind.GLUCOSE_BELOW_SUSPEND_THRESHOLD
        assert rec.notice.glucose.quantity.mgdl == 60.0

    def test_current_glucose_below_target(self, bolus, predicted):
        rec = bolus(predicted(85.0))
        assert rec.amount == 0.0
        assert rec.notice.kind == BolusNoticeKind.CURRENT_GLUCOSE_BELOW_TARGET

    def test_predicted_below_target(self, bolus, predicted):
        rec = bolus(predicted(120.0, 120.0, 90.0, 90.0))
        assert rec.amount == 0.0
        assert rec.notice.kind == BolusNoticeKind.PREDICTED_GLUCOSE_BELOW_TARGET

    def test_dip_then_rise(self, bolus, predicted):
        rec = bolus(predicted(95.0, 200.0))
        assert rec.amount > 0
        assert rec.notice.kind == BolusNoticeKind.CURRENT_GLUCOSE_BELOW_TARGET


class TestAutomaticDose:
    def test_partial_bolus_without_temp(self, predicted, now, model, target_schedule, basal_schedule):
        dose = recommended_automatic_dose(
            predicted(200.0),
            target_schedule,
            now,
            SUSPEND,
            SENSITIVITY,
            model,
            basal_rates=basal_schedule,
            max_automatic_bolus=5.0,
            partial_application_factor=0.4,
            last_temp_basal=None,
        )
        assert dose.bolus_units == pytest.approx(0.76)
        assert dose.basal_adjustment is None

    def test_suspend(self, predicted, now, model, target_schedule, basal_schedule):
        dose = recommended_automatic_dose(
            predicted(*([120.0] * 12 + [60.0])),
            target_schedule,
            now,
            SUSPEND,
            SENSITIVITY,
            model,
            basal_rates=basal_schedule,
            max_automatic_bolus=5.0,
            partial_application_factor=0.4,
            last_temp_basal=None,
        )
        assert dose.bolus_units == 0.0
        assert dose.basal_adjustment.units_per_hour == 0.0


class TestApplicationFactor:
    def test_constant(self, target_schedule, now):
        strategy = ConstantApplicationFactorStrategy()
        assert strategy.dosing_factor(GlucoseQuantity.mg_dl(250.0), target_schedule, now) == 0.4

    @pytest.mark.parametrize(
        "glucose, expected",
        [(100.0, 0.2), (110.0, 0.2), (155.0, 0.5), (200.0, 0.8), (300.0, 0.8)],
    )
    def test_glucose_based(self, target_schedule, now, glucose, expected):
        strategy = GlucoseBasedApplicationFactorStrategy()
        assert strategy.dosing_factor(GlucoseQuantity.mg_dl(glucose), target_schedule, now) == pytest.approx(expected)


class TestHelpers:
    def test_round_to_increment(self):
        assert round_to_increment(1.234, 0.05) == pytest.approx(1.2)
        assert round_to_increment(-0.3, 0.05) == 0.0

    def test_recommendation_fresh(self, now):
        check_recommendation_fresh(now - timedelta(minutes=15), now, timedelta(minutes=15))
        with pytest.raises(RecommendationExpiredError):
            check_recommendation_fresh(now - timedelta(minutes=16), now, timedelta(minutes=15))
