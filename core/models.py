"""
Cycle Investment Engine: data model

Asset snapshots, positions, iteration records and cycles. Everything that
enters the core from storage or upstream feeds goes through the ``from_dict``
constructors here, so classification and numeric fields are normalized once.
"""
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from core.sell_decision import SellDecision

logger = logging.getLogger(__name__)


DEFAULT_CYCLE_DURATION_MS = 12 * 60 * 60 * 1000

# Snapshot price keys, in order of preference
_PRICE_KEYS = ("current_price", "price", "snapshotPrice", "entryPrice", "lastPrice", "usd", "usd_price")


def utc_now_ms() -> int:
    """Current UTC time as epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_to_ms(value: Optional[str]) -> Optional[int]:
    """Epoch milliseconds for an ISO-8601 string; None when missing or unparsable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def parse_price(value: Any) -> Optional[float]:
    """Return a positive finite float, or None. Never coerces garbage to zero."""
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class Classification(str, Enum):
    """Prediction category assigned upstream to every snapshot asset."""
    INVERTIBLE = "INVERTIBLE"
    APALANCADO = "APALANCADO"
    RUIDOSO = "RUIDOSO"

    @classmethod
    def from_raw(cls, value: Any) -> "Classification":
        """
        Normalize a raw classification into the enum.

        Accepts an enum member, a string, or a mapping carrying ``category``
        or ``label``. Anything unrecognized is RUIDOSO.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            value = value.get("category") or value.get("label")
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        return cls.RUIDOSO


@dataclass(frozen=True)
class AssetSnapshot:
    """Per-cycle, immutable view of one candidate asset."""
    id: str
    symbol: str
    price: Optional[float]
    predicted_change: float
    classification: Classification
    boost_power: float
    name: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssetSnapshot":
        price = None
        for key in _PRICE_KEYS:
            price = parse_price(data.get(key))
            if price is not None:
                break

        predicted = data.get("predictedChange", data.get("predicted_change"))
        boost = data.get("boostPower", data.get("boost_power"))
        asset_id = str(data.get("id") or "")
        symbol = str(data.get("symbol") or "").upper()

        return cls(
            id=asset_id,
            symbol=symbol,
            price=price,
            predicted_change=_as_float(predicted),
            classification=Classification.from_raw(data.get("classification")),
            boost_power=_as_float(boost),
            name=str(data.get("name") or symbol or asset_id),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "name": self.name,
            "current_price": self.price,
            "predictedChange": self.predicted_change,
            "classification": self.classification.value,
            "boostPower": self.boost_power,
        }


@dataclass(frozen=True)
class PriceInfo:
    """Normalized price reading for one asset."""
    price: float
    change_24h: float
    source: str
    is_stale: bool = False
    stale_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "price": self.price,
            "change24h": self.change_24h,
            "source": self.source,
            "isStale": self.is_stale,
        }
        if self.stale_ms is not None:
            data["staleMs"] = self.stale_ms
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PriceInfo":
        stale_ms = data.get("staleMs")
        return cls(
            price=float(data["price"]),
            change_24h=_as_float(data.get("change24h")),
            source=str(data.get("source") or "unknown"),
            is_stale=bool(data.get("isStale", False)),
            stale_ms=int(stale_ms) if stale_ms is not None else None,
        )


@dataclass
class FetchStats:
    """Aggregate statistics for one price resolution pass."""
    source: Optional[str] = None
    retries: int = 0
    stale_count: int = 0
    fetched_count: int = 0
    attempts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "retries": self.retries,
            "staleCount": self.stale_count,
            "fetchedCount": self.fetched_count,
            "attempts": dict(self.attempts),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "FetchStats":
        data = data or {}
        return cls(
            source=data.get("source"),
            retries=int(data.get("retries") or 0),
            stale_count=int(data.get("staleCount") or 0),
            fetched_count=int(data.get("fetchedCount") or 0),
            attempts={k: int(v) for k, v in (data.get("attempts") or {}).items()},
        )


# Position attribute -> storage key
_POSITION_KEYS = (
    ("id", "id"),
    ("cycle_id", "cycleId"),
    ("asset_id", "assetId"),
    ("symbol", "symbol"),
    ("name", "name"),
    ("classification", "classification"),
    ("status", "status"),
    ("mode", "mode"),
    ("exchange", "exchange"),
    ("entry_price", "entryPrice"),
    ("current_price", "currentPrice"),
    ("units", "units"),
    ("capital_usd", "capitalUSD"),
    ("take_profit_price", "takeProfitPrice"),
    ("stop_loss_price", "stopLossPrice"),
    ("predicted_change", "predictedChange"),
    ("boost_power", "boostPower"),
    ("opened_at", "openedAt"),
    ("closed_at", "closedAt"),
    ("hold_cycles", "holdCycles"),
    ("max_hold_cycles", "maxHoldCycles"),
    ("unrealized_pnl", "unrealizedPnL"),
    ("unrealized_pnl_pct", "unrealizedPnLPct"),
    ("realized_pnl", "realizedPnL"),
    ("realized_pnl_pct", "realizedPnLPct"),
    ("gross_pnl", "grossPnL"),
    ("exit_price", "exitPrice"),
    ("entry_fee_usd", "entryFeeUSD"),
    ("exit_fee_usd", "exitFeeUSD"),
    ("total_fees_usd", "totalFeesUSD"),
    ("api_cost_usd", "apiCostUSD"),
    ("close_reason", "closeReason"),
    ("exchange_order_id", "exchangeOrderId"),
)

_OPTIONAL_FLOATS = {
    "realized_pnl", "realized_pnl_pct", "gross_pnl", "exit_price", "exit_fee_usd",
}


@dataclass
class Position:
    """
    One open or closed bet on an asset.

    ``status`` goes open -> closed exactly once, and only through
    ``core.position_manager.close_position``.
    """
    id: str
    cycle_id: str
    asset_id: str
    symbol: str
    entry_price: float
    units: float
    capital_usd: float
    take_profit_price: float
    stop_loss_price: float
    predicted_change: float
    boost_power: float
    opened_at: str
    max_hold_cycles: int
    name: str = ""
    classification: Classification = Classification.INVERTIBLE
    status: str = "open"
    mode: str = "simulated"
    exchange: str = "binance"
    current_price: Optional[float] = None
    closed_at: Optional[str] = None
    hold_cycles: int = 0
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    realized_pnl: Optional[float] = None
    realized_pnl_pct: Optional[float] = None
    gross_pnl: Optional[float] = None
    exit_price: Optional[float] = None
    entry_fee_usd: float = 0.0
    exit_fee_usd: Optional[float] = None
    total_fees_usd: float = 0.0
    api_cost_usd: float = 0.0
    close_reason: Optional[str] = None
    exchange_order_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for attr, key in _POSITION_KEYS:
            value = getattr(self, attr)
            if isinstance(value, Classification):
                value = value.value
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Position":
        kwargs: Dict[str, Any] = {}
        for attr, key in _POSITION_KEYS:
            if key in data:
                kwargs[attr] = data[key]

        kwargs["classification"] = Classification.from_raw(data.get("classification", "INVERTIBLE"))
        for attr in ("entry_price", "units", "capital_usd", "take_profit_price", "stop_loss_price",
                     "predicted_change", "boost_power", "unrealized_pnl", "unrealized_pnl_pct",
                     "entry_fee_usd", "total_fees_usd", "api_cost_usd"):
            kwargs[attr] = _as_float(kwargs.get(attr))
        for attr in _OPTIONAL_FLOATS:
            kwargs[attr] = _optional_float(kwargs.get(attr))
        kwargs["current_price"] = parse_price(kwargs.get("current_price"))
        kwargs["hold_cycles"] = int(kwargs.get("hold_cycles") or 0)
        kwargs["max_hold_cycles"] = int(kwargs.get("max_hold_cycles") or 0)
        kwargs.setdefault("opened_at", utc_now_iso())
        return cls(**kwargs)


@dataclass(frozen=True)
class IterationRecord:
    """One price check of a cycle. Written once, never modified."""
    iteration_index: int
    timestamp: int
    is_last: bool
    prices: Dict[str, PriceInfo]
    decisions: Dict[str, SellDecision]
    failed_ids: List[str]
    fetch_stats: FetchStats
    assets_count: int = 0

    @property
    def iteration_number(self) -> int:
        return self.iteration_index + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iterationIndex": self.iteration_index,
            "iterationNumber": self.iteration_number,
            "timestamp": self.timestamp,
            "isLast": self.is_last,
            "prices": {asset_id: info.to_dict() for asset_id, info in self.prices.items()},
            "decisions": {asset_id: d.to_dict() for asset_id, d in self.decisions.items()},
            "failedIds": list(self.failed_ids),
            "fetchStats": self.fetch_stats.to_dict(),
            "assetsCount": self.assets_count,
            "fetchedCount": len(self.prices),
            "staleCount": self.fetch_stats.stale_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IterationRecord":
        return cls(
            iteration_index=int(data["iterationIndex"]),
            timestamp=int(data["timestamp"]),
            is_last=bool(data.get("isLast", False)),
            prices={k: PriceInfo.from_dict(v) for k, v in (data.get("prices") or {}).items()},
            decisions={k: SellDecision.from_dict(v) for k, v in (data.get("decisions") or {}).items()},
            failed_ids=list(data.get("failedIds") or []),
            fetch_stats=FetchStats.from_dict(data.get("fetchStats")),
            assets_count=int(data.get("assetsCount") or 0),
        )


@dataclass
class Cycle:
    """
    Bounded investment window over a fixed asset snapshot.

    ``iterations`` is append-only. ``version`` increases on every successful
    save and backs the optimistic check in the cycle store.
    """
    id: str
    start_time: int
    end_time: int
    duration_ms: int
    snapshot: List[AssetSnapshot]
    iterations: List[IterationRecord] = field(default_factory=list)
    status: str = "pending"
    last_iteration_at: Optional[int] = None
    iterations_complete: bool = False
    completed_at: Optional[int] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Optional[Dict[str, Any]] = None
    version: int = 0

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "durationMs": self.duration_ms,
            "snapshot": [asset.to_dict() for asset in self.snapshot],
            "iterations": [record.to_dict() for record in self.iterations],
            "status": self.status,
            "lastIterationAt": self.last_iteration_at,
            "iterationsComplete": self.iterations_complete,
            "completedAt": self.completed_at,
            "results": list(self.results),
            "metrics": self.metrics,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Cycle":
        start = int(data["startTime"])
        duration = int(data.get("durationMs") or DEFAULT_CYCLE_DURATION_MS)
        end = data.get("endTime")
        return cls(
            id=str(data["id"]),
            start_time=start,
            end_time=int(end) if end is not None else start + duration,
            duration_ms=duration,
            snapshot=[AssetSnapshot.from_dict(a) for a in data.get("snapshot") or []],
            iterations=[IterationRecord.from_dict(r) for r in data.get("iterations") or []],
            status=str(data.get("status") or "pending"),
            last_iteration_at=data.get("lastIterationAt"),
            iterations_complete=bool(data.get("iterationsComplete", False)),
            completed_at=data.get("completedAt"),
            results=list(data.get("results") or []),
            metrics=data.get("metrics"),
            version=int(data.get("version") or 0),
        )
