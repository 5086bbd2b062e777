"""
Sell-decision rules for open positions during cycle iterations.

``evaluate_sell_decision`` is pure: no I/O, no mutation, same answer for the
same inputs. Rules are checked in priority order and the first match wins.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

if TYPE_CHECKING:
    from core.config import InvestConfig
    from core.models import Position


EARLY_EXIT_HOLD_RATIO = 0.75
EARLY_EXIT_TP_FRACTION = 0.5


@dataclass(frozen=True)
class SellDecision:
    """Outcome of evaluating one position at one iteration"""
    action: str  # "hold" or "sell"
    reason: str
    urgency: str  # "high", "medium", "low"
    pnl_pct: Optional[float]
    rule: str = "hold"  # stop_loss, take_profit, prediction_reached, cycle_end, early_take_profit, hold, no_price
    no_price: bool = False
    price_source: Optional[str] = None

    @property
    def should_sell(self) -> bool:
        return self.action == "sell"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action,
            "reason": self.reason,
            "urgency": self.urgency,
            "pnlPct": self.pnl_pct,
            "rule": self.rule,
        }
        if self.no_price:
            data["noPrice"] = True
        if self.price_source:
            data["priceSource"] = self.price_source
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SellDecision":
        pnl = data.get("pnlPct")
        return cls(
            action=str(data.get("action", "hold")),
            reason=str(data.get("reason", "")),
            urgency=str(data.get("urgency", "low")),
            pnl_pct=float(pnl) if pnl is not None else None,
            rule=str(data.get("rule", "hold")),
            no_price=bool(data.get("noPrice", False)),
            price_source=data.get("priceSource"),
        )


def no_price_decision() -> SellDecision:
    """Hold decision recorded when an asset could not be priced at all."""
    return SellDecision(
        action="hold",
        reason="No price available, holding",
        urgency="low",
        pnl_pct=None,
        rule="no_price",
        no_price=True,
    )


def evaluate_sell_decision(
    position: "Position",
    current_price: float,
    config: "InvestConfig",
    iteration_index: int,
    total_iterations: int,
) -> SellDecision:
    """
    Decide whether to sell a position at this iteration.

    Priority: stop loss, take profit, prediction reached, last iteration,
    early take profit (>=75% of the cycle elapsed), hold.

    Args:
        position: Open position being evaluated
        current_price: Resolved price for the position's asset
        config: InvestConfig with take_profit_pct / stop_loss_pct
        iteration_index: 0-based index of the current iteration
        total_iterations: Scheduled iteration count for the cycle

    Returns:
        SellDecision with action, reason, urgency and pnl_pct
    """
    take_profit_pct = config.take_profit_pct
    stop_loss_pct = config.stop_loss_pct

    entry_price = position.entry_price if position.entry_price > 0 else current_price
    if entry_price > 0:
        pnl_pct = (current_price - entry_price) / entry_price * 100
    else:
        pnl_pct = 0.0

    is_last = iteration_index >= total_iterations - 1
    hold_ratio = iteration_index / max(total_iterations - 1, 1)

    if pnl_pct <= -stop_loss_pct:
        return SellDecision(
            action="sell",
            reason=f"Stop loss hit: {pnl_pct:.2f}% (threshold -{stop_loss_pct}%)",
            urgency="high",
            pnl_pct=pnl_pct,
            rule="stop_loss",
        )

    if pnl_pct >= take_profit_pct:
        return SellDecision(
            action="sell",
            reason=f"Take profit reached: +{pnl_pct:.2f}% (target +{take_profit_pct}%)",
            urgency="high",
            pnl_pct=pnl_pct,
            rule="take_profit",
        )

    predicted = position.predicted_change
    if predicted > 0 and pnl_pct > 0 and pnl_pct >= predicted:
        return SellDecision(
            action="sell",
            reason=f"Prediction reached: +{pnl_pct:.2f}% >= predicted +{predicted:.2f}%",
            urgency="medium",
            pnl_pct=pnl_pct,
            rule="prediction_reached",
        )

    if is_last:
        if pnl_pct <= 0:
            return SellDecision(
                action="sell",
                reason=f"Cycle end: closing with PnL {pnl_pct:.2f}%",
                urgency="medium",
                pnl_pct=pnl_pct,
                rule="cycle_end",
            )
        return SellDecision(
            action="sell",
            reason=f"Cycle end: closing with gain +{pnl_pct:.2f}%",
            urgency="low",
            pnl_pct=pnl_pct,
            rule="cycle_end",
        )

    if hold_ratio >= EARLY_EXIT_HOLD_RATIO and pnl_pct >= take_profit_pct * EARLY_EXIT_TP_FRACTION:
        return SellDecision(
            action="sell",
            reason=(
                f"Early take profit: +{pnl_pct:.2f}% with "
                f"{round(hold_ratio * 100)}% of the cycle elapsed"
            ),
            urgency="medium",
            pnl_pct=pnl_pct,
            rule="early_take_profit",
        )

    sign = "+" if pnl_pct >= 0 else ""
    return SellDecision(
        action="hold",
        reason=f"Hold: PnL {sign}{pnl_pct:.2f}% (TP +{take_profit_pct}% / SL -{stop_loss_pct}%)",
        urgency="low",
        pnl_pct=pnl_pct,
    )
