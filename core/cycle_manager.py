"""
Cycle lifecycle: creation, due detection and completion with accuracy metrics.

These helpers are pure; the cycle store persists what they return.
"""
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.exceptions import CycleCompletedError
from core.models import DEFAULT_CYCLE_DURATION_MS, AssetSnapshot, Classification, Cycle, utc_now_ms

logger = logging.getLogger(__name__)

# |predicted - actual| below this (in points) counts as a correct magnitude
MAGNITUDE_TOLERANCE_PCT = 15.0


def create_cycle(
    snapshot: Sequence[AssetSnapshot],
    duration_ms: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> Cycle:
    """New pending cycle over ``snapshot`` starting now."""
    start = now_ms if now_ms is not None else utc_now_ms()
    duration = duration_ms or DEFAULT_CYCLE_DURATION_MS
    assets = [asset for asset in snapshot if asset.id]
    cycle = Cycle(
        id=f"cycle_{start}",
        start_time=start,
        end_time=start + duration,
        duration_ms=duration,
        snapshot=assets,
    )
    logger.info(f"Created cycle {cycle.id}: {len(assets)} assets, {duration / 3600000:.1f}h")
    return cycle


def detect_pending_cycles(cycles: Iterable[Cycle], now_ms: Optional[int] = None) -> List[Cycle]:
    """Cycles still pending whose end time has passed."""
    now = now_ms if now_ms is not None else utc_now_ms()
    return [c for c in cycles if not c.is_completed and now >= c.end_time]


def latest_prices(cycle: Cycle) -> Dict[str, float]:
    """Most recent known price per asset from the cycle's iterations."""
    prices: Dict[str, float] = {}
    for record in cycle.iterations:
        for asset_id, info in record.prices.items():
            prices[asset_id] = info.price
    return prices


def _category_metrics(results: Sequence[Mapping[str, Any]], category: Classification) -> Dict[str, Any]:
    filtered = [r for r in results if r["classification"] == category.value]
    if not filtered:
        return {"total": 0, "correct": 0, "successRate": 0.0}
    correct = sum(1 for r in filtered if r["correct"])
    return {
        "total": len(filtered),
        "correct": correct,
        "successRate": round(correct / len(filtered) * 100, 2),
    }


def recalculate_metrics(results: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Accuracy metrics over a (possibly filtered) list of cycle results."""
    metrics: Dict[str, Any] = {
        "total": len(results),
        "correct": sum(1 for r in results if r["correct"]),
        "successRate": 0.0,
        "avgError": 0.0,
        "maxError": 0.0,
    }
    for category in Classification:
        metrics[category.value.lower()] = _category_metrics(results, category)
    if results:
        errors = [float(r["error"]) for r in results]
        metrics["successRate"] = round(metrics["correct"] / len(results) * 100, 2)
        metrics["avgError"] = round(sum(errors) / len(errors), 2)
        metrics["maxError"] = round(max(errors), 2)
    return metrics


def complete_cycle(
    cycle: Cycle,
    current_prices: Optional[Mapping[str, float]] = None,
    now_ms: Optional[int] = None,
) -> Cycle:
    """
    Mark a cycle completed and score each snapshot prediction.

    A prediction is correct when it has the same direction as the actual
    change and misses by less than MAGNITUDE_TOLERANCE_PCT points. Assets
    with no snapshot price or no current price are left out of the results.
    """
    if cycle.is_completed:
        raise CycleCompletedError(cycle.id)

    prices = current_prices if current_prices is not None else latest_prices(cycle)
    results = []
    for asset in cycle.snapshot:
        current = prices.get(asset.id)
        if asset.price is None or not current or current <= 0:
            continue
        actual = (current - asset.price) / asset.price * 100
        predicted = asset.predicted_change
        same_direction = (predicted >= 0) == (actual >= 0)
        error = abs(predicted - actual)
        results.append({
            "id": asset.id,
            "symbol": asset.symbol,
            "name": asset.name,
            "snapshotPrice": asset.price,
            "currentPrice": current,
            "predictedChange": round(predicted, 2),
            "actualChange": round(actual, 2),
            "classification": asset.classification.value,
            "boostPower": asset.boost_power,
            "correct": same_direction and error < MAGNITUDE_TOLERANCE_PCT,
            "error": round(error, 2),
        })

    metrics = recalculate_metrics(results)
    logger.info(
        f"Completed cycle {cycle.id}: {metrics['correct']}/{metrics['total']} correct "
        f"({metrics['successRate']}%)"
    )
    return replace(
        cycle,
        status="completed",
        iterations_complete=True,
        results=results,
        metrics=metrics,
        completed_at=now_ms if now_ms is not None else utc_now_ms(),
    )


def get_global_stats(cycles: Sequence[Cycle]) -> Dict[str, Any]:
    """Success-rate statistics across completed cycles."""
    completed = [c for c in cycles if c.is_completed and c.metrics]
    if not completed:
        return {"totalCycles": 0, "totalPredictions": 0, "avgSuccessRate": 0.0,
                "bestCycle": None, "worstCycle": None}

    ranked = sorted(completed, key=lambda c: c.metrics.get("successRate", 0.0), reverse=True)
    rates = [c.metrics.get("successRate", 0.0) for c in completed]
    return {
        "totalCycles": len(completed),
        "totalPredictions": sum(c.metrics.get("total", 0) for c in completed),
        "avgSuccessRate": round(sum(rates) / len(rates), 2),
        "bestCycle": {"id": ranked[0].id, "successRate": ranked[0].metrics["successRate"]},
        "worstCycle": {"id": ranked[-1].id, "successRate": ranked[-1].metrics["successRate"]},
    }
