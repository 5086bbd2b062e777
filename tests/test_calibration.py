"""
Tests for the calibration engine (EMA bias/scale per category and
BoostPower range).
"""

from dataclasses import replace

import pytest

from core.calibration import (
    MAX_HISTORY,
    CalibrationState,
    boost_range_for,
    build_calibration_report,
    correction_factors,
    observe,
    rebuild,
)
from core.models import Classification
from tests.helpers import make_position


def _closed(predicted=10.0, actual=5.0, boost_power=0.8,
            classification=Classification.INVERTIBLE, closed_at="2024-01-01T00:00:00+00:00", symbol="BTC"):
    position = make_position(
        symbol=symbol, predicted_change=predicted, boost_power=boost_power, classification=classification
    )
    return replace(position, status="closed", realized_pnl_pct=actual, closed_at=closed_at)


class TestBoostRanges:

    @pytest.mark.parametrize("bp,category,label", [
        (0.65, Classification.INVERTIBLE, "0.65-0.75"),
        (0.80, Classification.INVERTIBLE, "0.75-0.85"),
        (0.99, Classification.INVERTIBLE, "0.85-1.00"),
        (0.50, Classification.APALANCADO, "0.40-0.55"),
        (0.60, Classification.APALANCADO, "0.55-0.65"),
        (0.50, Classification.RUIDOSO, None),
    ])
    def test_labels(self, bp, category, label):
        assert boost_range_for(bp, category) == label


class TestObserve:
    """Folding closed positions into the EMAs"""

    def test_first_sample_seeds_ema(self):
        state = observe(CalibrationState.empty(), _closed(predicted=10.0, actual=4.0))
        entry = state.category(Classification.INVERTIBLE)

        assert entry.samples == 1
        assert entry.bias_ema == pytest.approx(6.0)
        assert entry.scale_ema == pytest.approx(0.4)
        assert entry.mae_ema == pytest.approx(6.0)
        assert entry.by_boost_range["0.75-0.85"].n == 1

    def test_ema_update(self):
        state = observe(CalibrationState.empty(), _closed(predicted=10.0, actual=4.0))
        state = observe(state, _closed(predicted=10.0, actual=10.0))
        entry = state.category(Classification.INVERTIBLE)

        assert entry.bias_ema == pytest.approx(6.0 * 0.75)
        assert entry.scale_ema == pytest.approx(0.4 * 0.75 + 1.0 * 0.25)

    def test_scale_is_clamped(self):
        state = observe(CalibrationState.empty(), _closed(predicted=1.0, actual=50.0))
        assert state.category(Classification.INVERTIBLE).scale_ema == 5.0

    def test_input_state_unchanged(self):
        empty = CalibrationState.empty()
        before = empty.to_dict()
        observe(empty, _closed())
        assert empty.to_dict() == before

    @pytest.mark.parametrize("position", [
        _closed(classification=Classification.RUIDOSO),
        _closed(predicted=0.0),
        replace(_closed(), realized_pnl_pct=None),
    ])
    def test_ignored_positions_return_same_state(self, position):
        state = CalibrationState.empty()
        assert observe(state, position) is state

    def test_history_newest_first_and_capped(self):
        state = CalibrationState.empty()
        for i in range(MAX_HISTORY + 5):
            state = observe(state, _closed(symbol=f"S{i}"))
        history = state.category(Classification.INVERTIBLE).history

        assert len(history) == MAX_HISTORY
        assert history[0]["symbol"] == f"S{MAX_HISTORY + 4}"


class TestCorrectionFactors:

    def test_none_below_minimum_samples(self):
        state = CalibrationState.empty()
        for _ in range(2):
            state = observe(state, _closed())
        assert correction_factors(state, Classification.INVERTIBLE, 0.8) is None

    def test_converges_to_observed_bias_and_scale(self):
        state = CalibrationState.empty()
        for _ in range(20):
            state = observe(state, _closed(predicted=10.0, actual=5.0))

        factors = correction_factors(state, Classification.INVERTIBLE, 0.8)

        assert factors.confidence == 1.0
        assert factors.bias_correction == pytest.approx(5.0)
        assert factors.scale_correction == pytest.approx(0.5)
        assert factors.source == "range:0.75-0.85"

    def test_falls_back_to_global_when_range_is_thin(self):
        state = CalibrationState.empty()
        for _ in range(5):
            state = observe(state, _closed(boost_power=0.7))

        factors = correction_factors(state, Classification.INVERTIBLE, 0.9)

        assert factors.source == "global"
        assert factors.confidence == pytest.approx(0.25)
        assert factors.bias_correction == pytest.approx(5.0 * 0.25)
        assert factors.scale_correction == pytest.approx(1 + (0.5 - 1) * 0.25)


class TestRebuildAndReport:

    def test_rebuild_replays_oldest_first(self):
        older = _closed(actual=0.0, closed_at="2024-01-01T00:00:00+00:00", symbol="OLD")
        newer = _closed(actual=10.0, closed_at="2024-02-01T00:00:00+00:00", symbol="NEW")
        still_open = make_position()

        state = rebuild([newer, still_open, older])
        entry = state.category(Classification.INVERTIBLE)

        assert entry.samples == 2
        assert entry.history[0]["symbol"] == "NEW"
        # seeded by the older error (10), then 0.75 * 10 + 0.25 * 0
        assert entry.bias_ema == pytest.approx(7.5)

    def test_state_survives_serialization(self):
        state = observe(CalibrationState.empty(), _closed())
        restored = CalibrationState.from_dict(state.to_dict())
        assert restored.to_dict() == state.to_dict()

    def test_report(self):
        state = CalibrationState.empty()
        for _ in range(12):
            state = observe(state, _closed(predicted=20.0, actual=5.0))

        report = build_calibration_report(state)
        invertible = report["categories"]["INVERTIBLE"]

        assert report["status"] == "active"
        assert invertible["quality"] == "good"
        assert invertible["hasEnough"]
        assert "Overestimating" in invertible["diagnosis"]
        assert len(invertible["recentHistory"]) == 10
        assert report["categories"]["APALANCADO"]["quality"] == "insufficient"

    def test_report_without_state(self):
        assert build_calibration_report(None) == {"status": "no_data"}
