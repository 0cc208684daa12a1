"""
Unit tests for the exponential insulin model, IOB and insulin glucose effect.
"""

import numpy as np
import pytest
from datetime import timedelta

from loop_logic.insulin import (
    INSULIN_MODEL_PRESETS,
    ExponentialInsulinModel,
    annotated,
    glucose_effects,
    insulin_model,
    insulin_on_board,
)
from loop_logic.models import DoseEntry
from loop_logic.schedule import BasalRateSchedule


@pytest.fixture
def model():
    return insulin_model("rapid_acting_adult")


class TestExponentialModel:
    """Shape of the action curve"""

    @pytest.mark.parametrize("name", sorted(INSULIN_MODEL_PRESETS))
    def test_endpoints(self, name):
        model = INSULIN_MODEL_PRESETS[name]
        assert model.percent_effect_remaining(timedelta(0)) == 1.0
        assert model.percent_effect_remaining(model.effect_duration) == 0.0

    @pytest.mark.parametrize("name", sorted(INSULIN_MODEL_PRESETS))
    def test_monotonic_non_increasing(self, name):
        model = INSULIN_MODEL_PRESETS[name]
        elapsed = np.arange(0, 60 * 7, 1.0)
        remaining = model.percent_effect_remaining_array(elapsed)
        assert np.all(np.diff(remaining) <= 1e-12)
        assert remaining[0] == 1.0
        assert remaining[-1] == 0.0

    def test_delay_holds_full_effect(self, model):
        assert model.percent_effect_remaining(timedelta(minutes=10)) == 1.0
        assert model.percent_effect_remaining(timedelta(minutes=15)) < 1.0

    def test_array_matches_scalar(self, model):
        elapsed = [0, 20, 75, 180, 300, 370]
        np.testing.assert_allclose(
            model.percent_effect_remaining_array(np.array(elapsed, dtype=float)),
            [model.percent_effect_remaining(timedelta(minutes=m)) for m in elapsed],
        )

    def test_effect_duration_includes_delay(self, model):
        assert model.effect_duration == timedelta(minutes=370)

    def test_invalid_peak(self):
        with pytest.raises(ValueError):
            ExponentialInsulinModel(timedelta(minutes=360), timedelta(minutes=200))

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            insulin_model("humalog_2000")


class TestInsulinOnBoard:
    def test_bolus_iob_decays(self, model, now):
        doses = [DoseEntry.bolus(now, 2.0)]
        values = [insulin_on_board(doses, model, now + timedelta(minutes=m)) for m in range(0, 400, 30)]
        assert values[0] == pytest.approx(2.0)
        assert all(b <= a for a, b in zip(values, values[1:]))
        assert values[-1] == pytest.approx(0.0)

    def test_future_bolus_not_counted(self, model, now):
        doses = [DoseEntry.bolus(now + timedelta(minutes=5), 2.0)]
        assert insulin_on_board(doses, model, now) == 0.0

    def test_temp_basal_netted(self, model, now):
        basal = BasalRateSchedule.constant(1.0)
        doses = annotated([DoseEntry.temp_basal(now - timedelta(hours=1), now, 1.0)], basal)
        assert insulin_on_board(doses, model, now) == pytest.approx(0.0)

    def test_suspend_gives_negative_iob(self, model, now):
        basal = BasalRateSchedule.constant(1.0)
        doses = annotated([DoseEntry.temp_basal(now - timedelta(hours=1), now, 0.0)], basal)
        assert insulin_on_board(doses, model, now) < 0


class TestAnnotation:
    def test_split_at_schedule_boundary(self, now):
        basal = BasalRateSchedule([(timedelta(0), 1.0), (timedelta(hours=12, minutes=30), 2.0)])
        dose = DoseEntry.temp_basal(now, now + timedelta(hours=1), 1.5)
        pieces = annotated([dose], basal)
        assert [p.scheduled_basal_rate for p in pieces] == [1.0, 2.0]
        assert pieces[0].net_basal_units == pytest.approx(0.25)
        assert pieces[1].net_basal_units == pytest.approx(-0.25)

    def test_bolus_untouched(self, now):
        dose = DoseEntry.bolus(now, 1.0)
        assert annotated([dose], BasalRateSchedule.constant(1.0)) == [dose]


class TestGlucoseEffects:
    """Cumulative glucose-lowering effect"""

    def test_bolus_total_effect(self, model, now, isf_schedule):
        effects = glucose_effects([DoseEntry.bolus(now, 1.0)], model, isf_schedule)
        assert effects[0].start_date == now
        assert effects[0].quantity.mgdl == pytest.approx(0.0)
        assert effects[-1].quantity.mgdl == pytest.approx(-50.0)
        values = [e.quantity.mgdl for e in effects]
        assert all(b <= a + 1e-9 for a, b in zip(values, values[1:]))

    def test_uniform_spacing(self, model, now, isf_schedule):
        effects = glucose_effects([DoseEntry.bolus(now, 1.0)], model, isf_schedule)
        gaps = {b.start_date - a.start_date for a, b in zip(effects, effects[1:])}
        assert gaps == {timedelta(minutes=5)}

    def test_neutral_temp_basal_has_no_effect(self, model, now, isf_schedule):
        doses = annotated(
            [DoseEntry.temp_basal(now, now + timedelta(minutes=30), 1.0)], BasalRateSchedule.constant(1.0)
        )
        effects = glucose_effects(doses, model, isf_schedule)
        assert all(e.quantity.mgdl == pytest.approx(0.0) for e in effects)

    def test_pending_insulin_excluded_by_default(self, model, now, isf_schedule):
        doses = annotated(
            [DoseEntry.temp_basal(now - timedelta(minutes=30), now + timedelta(minutes=30), 2.0)],
            BasalRateSchedule.constant(1.0),
        )
        delivered = glucose_effects(doses, model, isf_schedule, now=now)
        pending = glucose_effects(doses, model, isf_schedule, now=now, include_pending=True)
        assert delivered[-1].quantity.mgdl == pytest.approx(-25.0)
        assert pending[-1].quantity.mgdl == pytest.approx(-50.0)

    def test_empty(self, model, isf_schedule):
        assert glucose_effects([], model, isf_schedule) == []
