"""
Iteration Orchestrator: one price check of an active cycle.

Each iteration resolves prices for the cycle's snapshot, evaluates every
open position of the cycle with the sell rules, appends an iteration record
to the cycle and reports which positions should be sold. Closing those
positions is left to the caller.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import InvestConfig
from core.exceptions import CycleCompletedError, CycleNotFoundError
from core.models import DEFAULT_CYCLE_DURATION_MS, Cycle, IterationRecord, Position, utc_now_ms
from core.price_resolver import PriceResolver, STALE_SOURCE
from core.sell_decision import SellDecision, evaluate_sell_decision, no_price_decision

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# cycle duration -> interval between iterations
INTERVAL_BY_DURATION = {
    1 * HOUR_MS: 10 * MINUTE_MS,
    2 * HOUR_MS: 15 * MINUTE_MS,
    4 * HOUR_MS: 30 * MINUTE_MS,
    6 * HOUR_MS: 1 * HOUR_MS,
    12 * HOUR_MS: 1 * HOUR_MS,
    24 * HOUR_MS: 2 * HOUR_MS,
    48 * HOUR_MS: 4 * HOUR_MS,
    72 * HOUR_MS: 6 * HOUR_MS,
}
DEFAULT_INTERVAL_MS = HOUR_MS
MIN_ITERATIONS = 2


def get_iteration_interval(duration_ms: int) -> int:
    """Interval of the configured bucket closest to ``duration_ms``."""
    if duration_ms <= 0:
        return DEFAULT_INTERVAL_MS
    closest = min(INTERVAL_BY_DURATION, key=lambda bucket: (abs(bucket - duration_ms), bucket))
    return INTERVAL_BY_DURATION.get(closest, DEFAULT_INTERVAL_MS)


def get_iteration_count(duration_ms: int) -> int:
    interval = get_iteration_interval(duration_ms)
    # round half up, matching schedule arithmetic on integer ms
    return max(MIN_ITERATIONS, int(duration_ms / interval + 0.5))


def get_iteration_schedule(start_time: int, duration_ms: int) -> List[int]:
    """Absolute due times of every iteration; the last is exactly start + duration."""
    interval = get_iteration_interval(duration_ms)
    count = get_iteration_count(duration_ms)
    schedule = [start_time + interval * i for i in range(1, count + 1)]
    schedule[-1] = start_time + duration_ms
    return schedule


def _cycle_duration(cycle: Cycle) -> int:
    return cycle.duration_ms or DEFAULT_CYCLE_DURATION_MS


def get_next_iteration_time(cycle: Cycle) -> Optional[int]:
    if cycle.is_completed:
        return None
    schedule = get_iteration_schedule(cycle.start_time, _cycle_duration(cycle))
    done = len(cycle.iterations)
    if done >= len(schedule):
        return None
    return schedule[done]


def has_iteration_due(cycle: Cycle, now_ms: Optional[int] = None) -> bool:
    """True once the next scheduled iteration time has passed."""
    next_due = get_next_iteration_time(cycle)
    if next_due is None:
        return False
    now = now_ms if now_ms is not None else utc_now_ms()
    return now >= next_due


def build_price_context(cycle: Cycle) -> Tuple[Dict[str, str], Dict[str, Tuple[float, int]]]:
    """
    Symbol map and last-known prices for a cycle.

    Last-known prices start from the snapshot (observed at cycle start) and
    are overridden by each fresh price in prior iterations. Stale readings
    are skipped so their age keeps counting from the real observation.
    """
    symbol_map: Dict[str, str] = {}
    last_known: Dict[str, Tuple[float, int]] = {}
    for asset in cycle.snapshot:
        if not asset.id:
            continue
        if asset.symbol:
            symbol_map[asset.id] = asset.symbol
        if asset.price is not None:
            last_known[asset.id] = (asset.price, cycle.start_time)

    for record in cycle.iterations:
        for asset_id, info in record.prices.items():
            if info.is_stale or info.source == STALE_SOURCE:
                continue
            last_known[asset_id] = (info.price, record.timestamp)
    return symbol_map, last_known


@dataclass(frozen=True)
class SellOrder:
    """A position the iteration decided to sell, with the price that triggered it."""
    position: Position
    current_price: float
    decision: SellDecision


@dataclass
class IterationResult:
    cycle_id: str
    iteration_index: int
    total_iterations: int
    is_last: bool
    timestamp: int
    assets_count: int
    fetched_count: int
    failed_ids: List[str]
    stale_count: int
    price_source: str
    decisions: Dict[str, SellDecision]
    prices: Dict[str, float] = field(default_factory=dict)
    to_sell: List[SellOrder] = field(default_factory=list)
    cycle: Optional[Cycle] = None

    @property
    def iteration_number(self) -> int:
        return self.iteration_index + 1

    @property
    def failed_count(self) -> int:
        return len(self.failed_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycleId": self.cycle_id,
            "iterationIndex": self.iteration_index,
            "iterationNumber": self.iteration_number,
            "totalIterations": self.total_iterations,
            "isLastIteration": self.is_last,
            "timestamp": self.timestamp,
            "assetsCount": self.assets_count,
            "fetchedCount": self.fetched_count,
            "failedCount": self.failed_count,
            "staleCount": self.stale_count,
            "priceSource": self.price_source,
            "decisions": {k: v.to_dict() for k, v in self.decisions.items()},
            "toSell": [
                {"positionId": o.position.id, "currentPrice": o.current_price, "decision": o.decision.to_dict()}
                for o in self.to_sell
            ],
        }


class IterationEngine:
    """
    Runs iterations against a cycle store.

    The store must provide ``load_cycle(cycle_id)`` and
    ``save_cycle(cycle, expected_version=...)``; the save is rejected if
    another writer appended an iteration since the load.
    """

    def __init__(self, cycle_store, resolver: PriceResolver, config: InvestConfig, metrics=None):
        self.cycle_store = cycle_store
        self.resolver = resolver
        self.config = config
        self.metrics = metrics

    def execute_iteration(
        self,
        cycle_id: str,
        positions: Iterable[Position],
        now_ms: Optional[int] = None,
    ) -> IterationResult:
        """
        Execute the next iteration of ``cycle_id``.

        Raises:
            CycleNotFoundError: cycle does not exist
            CycleCompletedError: cycle is already completed
            StaleCycleVersionError: a concurrent writer saved the cycle first
        """
        cycle = self.cycle_store.load_cycle(cycle_id)
        if cycle is None:
            raise CycleNotFoundError(cycle_id)
        if cycle.is_completed:
            raise CycleCompletedError(cycle_id)

        now = now_ms if now_ms is not None else utc_now_ms()
        duration = _cycle_duration(cycle)
        iter_idx = len(cycle.iterations)
        total = get_iteration_count(duration)
        is_last = now >= cycle.end_time or iter_idx >= total - 1
        # past end_time the evaluator must see the final slot even if earlier runs were missed
        decision_idx = total - 1 if is_last else iter_idx

        symbol_map, last_known = build_price_context(cycle)
        asset_ids = [asset.id for asset in cycle.snapshot if asset.id]

        logger.debug(f"Cycle {cycle_id}: iteration {iter_idx + 1}/{total}, resolving {len(asset_ids)} prices")
        resolution = self.resolver.resolve(asset_ids, symbol_map, last_known=last_known, now_ms=now)
        if self.metrics is not None:
            self.metrics.record_price_resolution(resolution.stats, len(resolution.failed_ids))

        decisions: Dict[str, SellDecision] = {}
        to_sell: List[SellOrder] = []
        for position in positions:
            if not position.is_open or position.cycle_id != cycle_id:
                continue
            info = resolution.prices.get(position.asset_id)
            if info is None:
                decisions[position.asset_id] = no_price_decision()
                logger.warning(f"{position.symbol}: no price available, holding")
                continue

            decision = evaluate_sell_decision(position, info.price, self.config, decision_idx, total)
            decision = replace(decision, price_source=info.source)
            decisions[position.asset_id] = decision
            if decision.should_sell:
                to_sell.append(SellOrder(position=position, current_price=info.price, decision=decision))
                logger.info(f"{position.symbol}: SELL ({decision.urgency}) {decision.reason}")

        record = IterationRecord(
            iteration_index=iter_idx,
            timestamp=now,
            is_last=is_last,
            prices=dict(resolution.prices),
            decisions=decisions,
            failed_ids=list(resolution.failed_ids),
            fetch_stats=resolution.stats,
            assets_count=len(asset_ids),
        )
        updated = replace(
            cycle,
            iterations=cycle.iterations + [record],
            last_iteration_at=now,
            iterations_complete=cycle.iterations_complete or is_last,
        )
        saved = self.cycle_store.save_cycle(updated, expected_version=cycle.version)

        logger.info(
            f"Cycle {cycle_id}: iteration {iter_idx + 1}/{total} recorded "
            f"(fetched={len(resolution.prices)}, stale={resolution.stats.stale_count}, "
            f"failed={len(resolution.failed_ids)}, to_sell={len(to_sell)})"
        )
        return IterationResult(
            cycle_id=cycle_id,
            iteration_index=iter_idx,
            total_iterations=total,
            is_last=is_last,
            timestamp=now,
            assets_count=len(asset_ids),
            fetched_count=len(resolution.prices),
            failed_ids=list(resolution.failed_ids),
            stale_count=resolution.stats.stale_count,
            price_source=resolution.stats.source or "none",
            decisions=decisions,
            prices={asset_id: info.price for asset_id, info in resolution.prices.items()},
            to_sell=to_sell,
            cycle=saved if saved is not None else updated,
        )
