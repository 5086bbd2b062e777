"""
Tests for cycle creation, due detection and completion scoring.
"""

from dataclasses import replace

import pytest

from core.cycle_manager import (
    complete_cycle,
    create_cycle,
    detect_pending_cycles,
    get_global_stats,
    latest_prices,
    recalculate_metrics,
)
from core.exceptions import CycleCompletedError
from core.models import Classification, FetchStats, IterationRecord, PriceInfo
from tests.helpers import HOUR_MS, T0, make_asset, make_cycle


def _with_prices(cycle, *price_maps):
    records = []
    for idx, prices in enumerate(price_maps):
        records.append(IterationRecord(
            iteration_index=idx,
            timestamp=T0 + (idx + 1) * HOUR_MS,
            is_last=False,
            prices={k: PriceInfo(price=v, change_24h=0.0, source="coingecko") for k, v in prices.items()},
            decisions={},
            failed_ids=[],
            fetch_stats=FetchStats(),
        ))
    return replace(cycle, iterations=records)


class TestCreateAndDetect:

    def test_create_cycle(self):
        cycle = create_cycle([make_asset(), make_asset(asset_id="")], 4 * HOUR_MS, now_ms=T0)

        assert cycle.id == f"cycle_{T0}"
        assert cycle.end_time == T0 + 4 * HOUR_MS
        assert cycle.status == "pending"
        assert [a.id for a in cycle.snapshot] == ["bitcoin"]

    def test_default_duration_is_twelve_hours(self):
        assert create_cycle([make_asset()], now_ms=T0).duration_ms == 12 * HOUR_MS

    def test_detect_pending(self):
        ended = make_cycle(start_time=T0 - 13 * HOUR_MS)
        running = make_cycle(start_time=T0)
        done = replace(make_cycle(start_time=T0 - 20 * HOUR_MS), status="completed")

        assert detect_pending_cycles([ended, running, done], now_ms=T0) == [ended]

    def test_latest_prices_prefers_newest_iteration(self):
        cycle = _with_prices(make_cycle(), {"bitcoin": 101.0}, {"bitcoin": 103.0})
        assert latest_prices(cycle) == {"bitcoin": 103.0}


class TestCompleteCycle:
    """Prediction scoring at cycle end"""

    def test_scores_predictions(self):
        cycle = make_cycle([
            make_asset("bitcoin", "BTC", 100.0, predicted_change=10.0),
            make_asset("ethereum", "ETH", 50.0, predicted_change=5.0, classification=Classification.APALANCADO),
            make_asset("solana", "SOL", 20.0, predicted_change=-2.0),
            make_asset("ghost", "GHO", None, predicted_change=3.0),
        ])
        cycle = _with_prices(cycle, {"bitcoin": 108.0, "ethereum": 45.0, "solana": 21.0})

        completed = complete_cycle(cycle, now_ms=T0 + 12 * HOUR_MS)

        assert completed.is_completed
        assert completed.completed_at == T0 + 12 * HOUR_MS
        results = {r["id"]: r for r in completed.results}
        assert set(results) == {"bitcoin", "ethereum", "solana"}
        assert results["bitcoin"]["correct"] is True
        assert results["bitcoin"]["actualChange"] == pytest.approx(8.0)
        assert results["ethereum"]["correct"] is False
        assert results["solana"]["correct"] is False
        assert completed.metrics["total"] == 3
        assert completed.metrics["correct"] == 1
        assert completed.metrics["invertible"]["total"] == 2
        assert completed.metrics["apalancado"]["successRate"] == 0.0

    def test_large_miss_in_right_direction_is_wrong(self):
        cycle = make_cycle([make_asset("bitcoin", "BTC", 100.0, predicted_change=40.0)])
        completed = complete_cycle(cycle, {"bitcoin": 110.0}, now_ms=T0)
        assert completed.results[0]["correct"] is False
        assert completed.results[0]["error"] == pytest.approx(30.0)

    def test_input_not_mutated(self):
        cycle = make_cycle()
        complete_cycle(cycle, {"bitcoin": 101.0}, now_ms=T0)
        assert cycle.status == "pending"
        assert cycle.results == []

    def test_completing_twice_raises(self):
        completed = complete_cycle(make_cycle(), {"bitcoin": 101.0}, now_ms=T0)
        with pytest.raises(CycleCompletedError):
            complete_cycle(completed, {"bitcoin": 101.0})


class TestStats:

    def test_recalculate_metrics_empty(self):
        metrics = recalculate_metrics([])
        assert metrics["total"] == 0
        assert metrics["successRate"] == 0.0

    def test_global_stats(self):
        good = complete_cycle(make_cycle(start_time=T0), {"bitcoin": 110.0}, now_ms=T0)
        bad = complete_cycle(make_cycle(start_time=T0 + 1), {"bitcoin": 80.0}, now_ms=T0)

        stats = get_global_stats([good, bad, make_cycle(start_time=T0 + 2)])

        assert stats["totalCycles"] == 2
        assert stats["avgSuccessRate"] == 50.0
        assert stats["bestCycle"]["id"] == good.id
        assert stats["worstCycle"]["id"] == bad.id

    def test_global_stats_without_cycles(self):
        assert get_global_stats([])["totalCycles"] == 0
