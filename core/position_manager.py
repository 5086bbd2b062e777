"""
Position Ledger: target selection, capital allocation, PnL accounting and closing.

All ledger operations return new Position objects instead of mutating their
input. ``close_position`` is the only place realized PnL is computed.

The ``PositionManager`` watchdog evaluates open positions outside the
iteration loop (e.g. positions whose cycle has already completed) against
stop-loss, take-profit and max-hold thresholds.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.config import InvestConfig
from core.models import AssetSnapshot, Classification, Position, utc_now_ms

logger = logging.getLogger(__name__)

FORCED_CLOSE_CONTEXTS = ("manual", "round_close", "orphan_close")


@dataclass(frozen=True)
class InvestmentTarget:
    """An asset selected for investment, with its capital allocation."""
    asset_id: str
    symbol: str
    name: str
    classification: Classification
    boost_power: float
    entry_price: float
    predicted_change: float
    capital_usd: float
    weight: float
    rank: int
    take_profit_price: float
    stop_loss_price: float
    expected_fee_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "symbol": self.symbol,
            "name": self.name,
            "classification": self.classification.value,
            "boostPower": self.boost_power,
            "entryPrice": self.entry_price,
            "predictedChange": self.predicted_change,
            "capitalUSD": self.capital_usd,
            "weight": self.weight,
            "rank": self.rank,
            "takeProfitPrice": self.take_profit_price,
            "stopLossPrice": self.stop_loss_price,
            "expectedFeeUSD": self.expected_fee_usd,
        }


@dataclass
class TargetSelection:
    """Result of target selection; ``should_invest`` False means do not invest."""
    selected: List[InvestmentTarget]
    reason: str
    should_invest: bool
    cycle_capital: float = 0.0
    all_candidates: List[AssetSnapshot] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": [t.to_dict() for t in self.selected],
            "reason": self.reason,
            "shouldInvest": self.should_invest,
            "cycleCapital": self.cycle_capital,
            "allCandidates": [a.to_dict() for a in self.all_candidates],
        }


@dataclass(frozen=True)
class CloseCheck:
    should_close: bool
    reason: Optional[str] = None


@dataclass
class PositionExitSignal:
    """Signal from the watchdog to exit a position"""
    position_id: str
    symbol: str
    reason: str  # "stop_loss", "take_profit", "max_hold"
    current_price: float
    entry_price: float
    pnl_pct: float
    hold_cycles: int


def _pnl_pct(entry_price: float, price: float) -> float:
    if entry_price <= 0:
        return 0.0
    return (price - entry_price) / entry_price * 100


def select_investment_targets(
    snapshot: Sequence[AssetSnapshot],
    config: InvestConfig,
    existing_positions: Iterable[Position] = (),
) -> TargetSelection:
    """
    Pick the assets to invest in for a new cycle and split the cycle capital.

    Candidates are INVERTIBLE assets meeting the BoostPower and predicted
    change floors that have a usable snapshot price, ranked by predicted
    change then BoostPower (both descending).
    """
    candidates = []
    for asset in snapshot:
        if asset.classification is not Classification.INVERTIBLE:
            continue
        if asset.boost_power < config.min_boost_power:
            continue
        if asset.predicted_change < config.min_predicted_change:
            continue
        if asset.price is None:
            logger.warning(f"Skipping {asset.symbol or asset.id}: snapshot has no valid price")
            continue
        candidates.append(asset)

    candidates.sort(key=lambda a: (-a.predicted_change, -a.boost_power))

    if len(candidates) < config.min_signals:
        return TargetSelection(
            selected=[],
            reason=(
                f"Only {len(candidates)} INVERTIBLE candidates "
                f"(pred >= {config.min_predicted_change}%, BP >= {config.min_boost_power * 100:.0f}%); "
                f"minimum required: {config.min_signals}"
            ),
            should_invest=False,
            all_candidates=candidates,
        )

    open_ids = {p.asset_id for p in existing_positions if p.is_open}
    available = [a for a in candidates if a.id not in open_ids]
    chosen = available[:config.max_positions]

    if not chosen:
        return TargetSelection(
            selected=[],
            reason="All candidates already have an open position",
            should_invest=False,
            all_candidates=candidates,
        )

    if not config.diversification:
        chosen = chosen[:1]

    cycle_capital = config.cycle_capital
    per_position = cycle_capital / len(chosen)

    targets = []
    for rank, asset in enumerate(chosen, start=1):
        targets.append(InvestmentTarget(
            asset_id=asset.id,
            symbol=asset.symbol,
            name=asset.name,
            classification=asset.classification,
            boost_power=asset.boost_power,
            entry_price=asset.price,
            predicted_change=asset.predicted_change,
            capital_usd=round(per_position, 2),
            weight=round(per_position / cycle_capital * 100, 1),
            rank=rank,
            take_profit_price=asset.price * (1 + config.take_profit_pct / 100),
            stop_loss_price=asset.price * (1 - config.stop_loss_pct / 100),
            expected_fee_usd=config.fee_for(per_position),
        ))

    top = chosen[0].predicted_change
    return TargetSelection(
        selected=targets,
        reason=f"{len(targets)} assets by highest potential (+{top:.1f}% predicted)",
        should_invest=True,
        cycle_capital=round(cycle_capital, 2),
        all_candidates=candidates,
    )


def create_position(
    target: InvestmentTarget,
    cycle_id: str,
    config: InvestConfig,
    now_ms: Optional[int] = None,
    exchange_order_id: Optional[str] = None,
) -> Position:
    """Build an open position from a selection target."""
    if target.entry_price <= 0:
        raise ValueError(f"Cannot open {target.symbol}: entry price must be positive")

    now = now_ms if now_ms is not None else utc_now_ms()
    position_id = f"pos_{now}_{target.asset_id}"
    if exchange_order_id is None and config.mode == "simulated":
        exchange_order_id = f"sim_{position_id}"

    return Position(
        id=position_id,
        cycle_id=cycle_id,
        asset_id=target.asset_id,
        symbol=target.symbol,
        name=target.name,
        classification=target.classification,
        status="open",
        mode=config.mode,
        exchange=config.exchange,
        entry_price=target.entry_price,
        current_price=target.entry_price,
        units=target.capital_usd / target.entry_price,
        capital_usd=target.capital_usd,
        take_profit_price=target.take_profit_price,
        stop_loss_price=target.stop_loss_price,
        predicted_change=target.predicted_change,
        boost_power=target.boost_power,
        opened_at=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
        max_hold_cycles=config.max_hold_cycles,
        entry_fee_usd=target.expected_fee_usd,
        total_fees_usd=target.expected_fee_usd,
        api_cost_usd=config.api_cost_per_cycle,
        exchange_order_id=exchange_order_id,
    )


def update_position_pnl(position: Position, current_price: float) -> Position:
    """Mark a position to market. Returns an updated copy."""
    gross = (current_price - position.entry_price) * position.units
    return replace(
        position,
        current_price=current_price,
        unrealized_pnl=gross - position.total_fees_usd,
        unrealized_pnl_pct=_pnl_pct(position.entry_price, current_price),
    )


def record_iteration_hold(position: Position, current_price: float) -> Position:
    """Mark to market and count one more iteration survived."""
    updated = update_position_pnl(position, current_price)
    return replace(updated, hold_cycles=position.hold_cycles + 1)


def close_position(
    position: Position,
    exit_price: float,
    reason: str,
    config: InvestConfig,
    closed_at: Optional[str] = None,
) -> Position:
    """
    Close an open position at ``exit_price``.

    Charges the exit fee, sets realized PnL and moves status to closed.
    Returns a new Position; the input is not modified.
    """
    if not position.is_open:
        raise ValueError(f"Position {position.id} is already {position.status}")

    exit_fee = config.fee_for(position.capital_usd)
    total_fees = position.entry_fee_usd + exit_fee
    gross = (exit_price - position.entry_price) * position.units
    realized = gross - total_fees
    realized_pct = realized / position.capital_usd * 100 if position.capital_usd > 0 else 0.0

    logger.info(
        f"Closing {position.symbol} ({position.id}) at {exit_price}: "
        f"reason={reason}, realized={realized:.4f} USD ({realized_pct:.2f}%)"
    )
    return replace(
        position,
        status="closed",
        closed_at=closed_at or datetime.now(timezone.utc).isoformat(),
        close_reason=reason,
        exit_price=exit_price,
        current_price=exit_price,
        exit_fee_usd=exit_fee,
        total_fees_usd=total_fees,
        gross_pnl=gross,
        realized_pnl=realized,
        realized_pnl_pct=realized_pct,
        unrealized_pnl=0.0,
        unrealized_pnl_pct=0.0,
    )


def evaluate_close_conditions(position: Position, current_price: float, config: InvestConfig) -> CloseCheck:
    """Stop-loss, take-profit and max-hold check for watchdog paths."""
    pnl_pct = _pnl_pct(position.entry_price, current_price)
    if pnl_pct <= -config.stop_loss_pct:
        return CloseCheck(True, "stop_loss")
    if pnl_pct >= config.take_profit_pct:
        return CloseCheck(True, "take_profit")
    max_hold = position.max_hold_cycles or config.max_hold_cycles
    if position.hold_cycles >= max_hold:
        return CloseCheck(True, "max_hold")
    return CloseCheck(False)


def evaluate_position(
    position: Position,
    current_price: float,
    context: str,
    config: InvestConfig,
) -> Dict[str, Any]:
    """
    Evaluate a position for closing and describe the PnL breakdown.

    ``manual`` and ``round_close`` contexts force a sell. When the position
    would close, an algorithm feedback record compares predicted and actual
    change.
    """
    pnl_pct = _pnl_pct(position.entry_price, current_price)
    exit_fee = config.fee_for(position.capital_usd)
    gross = (current_price - position.entry_price) * position.units

    check = evaluate_close_conditions(position, current_price, config)
    should_close = context in FORCED_CLOSE_CONTEXTS or check.should_close
    reason = check.reason or context or "evaluate"

    feedback = None
    if should_close:
        correct = pnl_pct >= position.predicted_change
        feedback = {
            "predictionCorrect": correct,
            "predictedChange": position.predicted_change,
            "actualChange": round(pnl_pct, 2),
            "errorMagnitude": round(abs(pnl_pct - position.predicted_change), 2),
            "closeReason": reason,
            "suggestion": (
                "Prediction correct, keep parameters" if correct
                else f"Review prediction: expected +{position.predicted_change:.1f}%, got {pnl_pct:.1f}%"
            ),
        }

    return {
        "decision": "sell" if should_close else "hold",
        "reason": reason,
        "pnlPct": round(pnl_pct, 2),
        "pnlUSD": gross,
        "netPnL": gross - exit_fee - position.entry_fee_usd,
        "exitFeeUSD": exit_fee,
        "algorithmFeedback": feedback,
    }


def calculate_available_capital(positions: Iterable[Position], capital_total: float) -> float:
    """Capital not tied up in open positions (never negative)."""
    invested = sum(p.capital_usd for p in positions if p.is_open)
    return max(0.0, capital_total - invested)


def build_cycle_summary(
    positions: Sequence[Position],
    cycle_id: Optional[str],
    config: InvestConfig,
) -> Dict[str, Any]:
    """Aggregate realized results of a cycle (or of all cycles when cycle_id is None)."""
    closed = [p for p in positions if not p.is_open and (cycle_id is None or p.cycle_id == cycle_id)]
    open_count = sum(1 for p in positions if p.is_open)

    total_pnl = sum(p.realized_pnl or 0.0 for p in closed)
    total_fees = sum(p.total_fees_usd for p in closed)
    invested = sum(p.capital_usd for p in closed)

    return {
        "cycleId": cycle_id,
        "totalPositions": len(closed),
        "openPositions": open_count,
        "wins": sum(1 for p in closed if (p.realized_pnl or 0.0) > 0),
        "losses": sum(1 for p in closed if (p.realized_pnl or 0.0) <= 0),
        "totalPnLUSD": round(total_pnl, 4),
        "totalFeesUSD": round(total_fees, 4),
        "netReturnPct": round(total_pnl / invested * 100, 2) if invested > 0 else 0.0,
        "available": round(calculate_available_capital(positions, config.capital_total), 2),
    }


class PositionManager:
    """
    Watchdog for open positions that are not driven by an active cycle.

    Responsibilities:
    - Find open positions whose cycle is completed or unknown (orphans)
    - Check them against stop-loss, take-profit and max-hold thresholds
    - Force an ``orphan_close`` exit for orphans of completed cycles
    - Produce exit signals; closing stays with the caller
    """

    def __init__(self, config: InvestConfig):
        self.config = config
        logger.info(
            f"PositionManager initialized: TP={config.take_profit_pct}%, "
            f"SL={config.stop_loss_pct}%, max_hold={config.max_hold_cycles}"
        )

    def find_orphans(self, positions: Iterable[Position], active_cycle_ids: Iterable[str]) -> List[Position]:
        active = set(active_cycle_ids)
        return [p for p in positions if p.is_open and p.cycle_id not in active]

    def evaluate_positions(
        self,
        positions: Iterable[Position],
        current_prices: Mapping[str, float],
        active_cycle_ids: Iterable[str],
        completed_cycle_ids: Iterable[str] = (),
    ) -> List[PositionExitSignal]:
        """
        Evaluate orphaned open positions and return exit signals.

        Args:
            positions: All known positions
            current_prices: asset_id -> current price
            active_cycle_ids: Ids of cycles still iterating
            completed_cycle_ids: Ids of finished cycles; their orphans always exit

        Returns:
            List of PositionExitSignal for positions that should be closed
        """
        completed = set(completed_cycle_ids)
        signals = []
        for position in self.find_orphans(positions, active_cycle_ids):
            price = current_prices.get(position.asset_id)
            if not price or price <= 0:
                logger.warning(f"No valid current price for orphan {position.symbol}, skipping exit check")
                continue

            check = evaluate_close_conditions(position, price, self.config)
            reason = check.reason
            if not check.should_close:
                if position.cycle_id not in completed:
                    logger.debug(f"Orphan {position.symbol} holds at {price}")
                    continue
                reason = "orphan_close"

            pnl_pct = _pnl_pct(position.entry_price, price)
            logger.info(f"Watchdog exit for {position.symbol}: {reason} at {pnl_pct:+.2f}%")
            signals.append(PositionExitSignal(
                position_id=position.id,
                symbol=position.symbol,
                reason=reason,
                current_price=price,
                entry_price=position.entry_price,
                pnl_pct=pnl_pct,
                hold_cycles=position.hold_cycles,
            ))
        return signals
