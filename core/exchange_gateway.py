"""
Exchange Gateway: market order placement for opening and closing positions.

Simulated mode never touches the network and returns a deterministic
synthetic fill. Real mode delegates to a venue client registered under the
configured exchange name. Order failures come back as
``OrderResult(success=False, error=...)``; they are never raised.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from core.config import InvestConfig

logger = logging.getLogger(__name__)

VALID_SIDES = ("BUY", "SELL")


class VenueClient(Protocol):
    """Adapter for one real exchange."""

    def place_market_order(
        self, symbol: str, side: str, amount_usd: float, keys: Mapping[str, str],
        client_order_id: Optional[str] = None,
    ) -> Mapping[str, Any]:
        ...


@dataclass
class OrderResult:
    success: bool
    symbol: str
    side: str
    amount_usd: float
    exchange: str
    simulated: bool = False
    order_id: Optional[str] = None
    executed_qty: float = 0.0
    fills: List[Dict[str, float]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def average_price(self) -> Optional[float]:
        qty = sum(f.get("qty", 0.0) for f in self.fills)
        if qty <= 0:
            return None
        return sum(f.get("price", 0.0) * f.get("qty", 0.0) for f in self.fills) / qty

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "simulated": self.simulated,
            "orderId": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "amountUSD": self.amount_usd,
            "exchange": self.exchange,
            "executedQty": self.executed_qty,
            "fills": list(self.fills),
        }
        if self.error:
            data["error"] = self.error
        return data


def _synthetic_order_id(symbol: str, side: str, amount_usd: float, client_order_id: Optional[str]) -> str:
    digest = hashlib.sha1(f"{symbol}|{side}|{amount_usd:.8f}|{client_order_id or ''}".encode()).hexdigest()
    return f"SIM_{digest[:16]}"


class ExchangeGateway:
    """
    Route market orders to the simulator or to a registered venue client.

    Args:
        venues: exchange name -> VenueClient used in real mode
    """

    def __init__(self, venues: Optional[Mapping[str, VenueClient]] = None):
        self.venues = {name.lower(): client for name, client in (venues or {}).items()}

    def place_order(
        self,
        symbol: str,
        side: str,
        amount_usd: float,
        config: InvestConfig,
        keys: Optional[Mapping[str, str]] = None,
        reference_price: Optional[float] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """
        Place a market order worth ``amount_usd``.

        In simulated mode the fill happens at ``reference_price`` (when given)
        with the configured fee; the same inputs always produce the same result.
        """
        side = side.upper()
        base = dict(symbol=symbol, side=side, amount_usd=amount_usd, exchange=config.exchange)

        if side not in VALID_SIDES:
            return OrderResult(success=False, error=f"Invalid order side: {side}", **base)
        if amount_usd <= 0:
            return OrderResult(success=False, error=f"Order amount must be positive, got {amount_usd}", **base)

        if config.mode == "simulated":
            return self._simulate(base, config, reference_price, client_order_id)

        venue = self.venues.get(config.exchange)
        if venue is None:
            logger.error(f"No venue client registered for exchange '{config.exchange}'")
            return OrderResult(success=False, error=f"Unsupported exchange: {config.exchange}", **base)

        try:
            raw = venue.place_market_order(symbol, side, amount_usd, keys or {}, client_order_id=client_order_id)
        except Exception as exc:
            logger.warning(f"{config.exchange} {side} {symbol} failed: {exc}")
            return OrderResult(success=False, error=str(exc), **base)

        if not raw.get("success", False):
            error = raw.get("error") or "order rejected"
            logger.warning(f"{config.exchange} rejected {side} {symbol}: {error}")
            return OrderResult(success=False, error=str(error), **base)

        fills = [
            {"price": float(f.get("price", 0.0)), "qty": float(f.get("qty", 0.0)),
             "fee": float(f.get("fee", 0.0))}
            for f in raw.get("fills") or []
        ]
        return OrderResult(
            success=True,
            order_id=raw.get("orderId"),
            executed_qty=float(raw.get("executedQty") or sum(f["qty"] for f in fills)),
            fills=fills,
            **base,
        )

    def _simulate(
        self,
        base: Dict[str, Any],
        config: InvestConfig,
        reference_price: Optional[float],
        client_order_id: Optional[str],
    ) -> OrderResult:
        order_id = _synthetic_order_id(base["symbol"], base["side"], base["amount_usd"], client_order_id)
        fills: List[Dict[str, float]] = []
        executed_qty = 0.0
        if reference_price and reference_price > 0:
            executed_qty = base["amount_usd"] / reference_price
            fills.append({
                "price": reference_price,
                "qty": executed_qty,
                "fee": config.fee_for(base["amount_usd"]),
            })
        logger.debug(f"Simulated {base['side']} {base['symbol']} ${base['amount_usd']:.2f} -> {order_id}")
        return OrderResult(
            success=True,
            simulated=True,
            order_id=order_id,
            executed_qty=executed_qty,
            fills=fills,
            **base,
        )
