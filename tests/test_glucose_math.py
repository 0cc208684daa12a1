"""
Unit tests for momentum, decay effects and the prediction merge.
"""

import pytest
from datetime import timedelta

from loop_logic.glucose_math import decay_effect, linear_momentum_effect, predict_glucose
from loop_logic.models import GlucoseEffect, GlucoseValue
from loop_logic.units import GlucoseQuantity


def effect_line(start, values, delta=timedelta(minutes=5)):
    return [GlucoseEffect.mg_dl(start + delta * i, v) for i, v in enumerate(values)]


class TestLinearMomentum:
    """Short-term trend extrapolation"""

    def test_rising_one_per_minute(self, now, glucose_series):
        samples = glucose_series(now, [100.0, 105.0, 110.0, 115.0])
        momentum = linear_momentum_effect(samples)
        assert momentum[0].start_date == now
        assert momentum[0].quantity.mgdl == pytest.approx(0.0)
        assert momentum[-1].start_date == now + timedelta(minutes=30)
        assert momentum[-1].quantity.mgdl == pytest.approx(30.0)
        assert len(momentum) == 7

    def test_off_grid_last_sample(self, now, glucose_series):
        samples = glucose_series(now + timedelta(minutes=2), [100.0, 105.0, 110.0])
        momentum = linear_momentum_effect(samples)
        assert momentum[0].start_date == now
        assert momentum[0].quantity.mgdl == 0.0
        assert momentum[-1].start_date == now + timedelta(minutes=35)
        assert momentum[-1].quantity.mgdl == pytest.approx(33.0)

    def test_too_few_samples(self, now, glucose_series):
        assert linear_momentum_effect(glucose_series(now, [100.0, 105.0])) == []

    def test_calibration_disables_momentum(self, now, glucose_series):
        samples = glucose_series(now, [100.0, 105.0, 110.0])
        samples[1] = GlucoseValue(samples[1].start_date, samples[1].quantity, is_calibration=True)
        assert linear_momentum_effect(samples) == []

    def test_mixed_provenance(self, now, glucose_series):
        samples = glucose_series(now, [100.0, 105.0, 110.0])
        samples[0] = GlucoseValue(samples[0].start_date, samples[0].quantity, provenance="meter")
        assert linear_momentum_effect(samples) == []

    def test_gap_disables_momentum(self, now, glucose_series):
        samples = glucose_series(now, [100.0, 105.0, 110.0], delta=timedelta(minutes=10))
        assert linear_momentum_effect(samples) == []


class TestDecayEffect:
    def test_zero_rate(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        effects = decay_effect(anchor, 0.0, timedelta(minutes=60))
        assert len(effects) == 12
        assert all(e.quantity.mgdl == 0.0 for e in effects)

    def test_positive_rate_decays_to_zero(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        effects = decay_effect(anchor, 1.0, timedelta(minutes=60))
        values = [e.quantity.mgdl for e in effects]
        steps = [b - a for a, b in zip(values, values[1:])]
        assert values[0] == 0.0
        assert steps[0] == pytest.approx(5.0 * (1 - 5.0 / 55.0))
        assert all(b <= a for a, b in zip(steps, steps[1:]))
        assert steps[-1] == pytest.approx(0.0)

    def test_grid_stops_one_step_before_duration(self, now):
        anchor = GlucoseValue(now + timedelta(minutes=2), GlucoseQuantity.mg_dl(120.0))
        effects = decay_effect(anchor, 1.0, timedelta(minutes=60))
        assert effects[0].start_date == now
        assert effects[-1].start_date == now + timedelta(minutes=55)
        assert all(b.start_date - a.start_date == timedelta(minutes=5) for a, b in zip(effects, effects[1:]))

    def test_negative_rate(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        effects = decay_effect(anchor, -1.0, timedelta(minutes=60))
        assert effects[-1].quantity.mgdl < 0


class TestPredictGlucose:
    """Merging effect timelines on the anchor"""

    def test_no_effects(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        assert len(predict_glucose(anchor)) == 1

    def test_linear_effect(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        prediction = predict_glucose(anchor, effects=[effect_line(now, [0.0, -5.0, -10.0, -15.0])])
        assert [p.quantity.mgdl for p in prediction] == pytest.approx([120.0, 115.0, 110.0, 105.0])

    def test_effects_summed_per_date(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        prediction = predict_glucose(
            anchor,
            effects=[effect_line(now, [0.0, -5.0, -10.0]), effect_line(now, [0.0, 2.0, 4.0])],
        )
        assert [p.quantity.mgdl for p in prediction] == pytest.approx([120.0, 117.0, 114.0])

    def test_dates_before_anchor_dropped(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        effect = effect_line(now - timedelta(minutes=10), [0.0, 10.0, 20.0, 30.0])
        prediction = predict_glucose(anchor, effects=[effect])
        assert prediction[0].start_date == now
        assert [p.quantity.mgdl for p in prediction] == pytest.approx([120.0, 130.0])

    def test_momentum_blend(self, now):
        anchor = GlucoseValue(now, GlucoseQuantity.mg_dl(120.0))
        momentum = effect_line(now, [0.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0])
        prediction = predict_glucose(anchor, momentum=momentum)
        values = [p.quantity.mgdl for p in prediction]
        assert values[1] == pytest.approx(125.0)
        assert values[2] == pytest.approx(129.0)
        assert values[-1] == pytest.approx(120.0 + 5 + 4 + 3 + 2 + 1)
