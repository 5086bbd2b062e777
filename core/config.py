"""
Investment configuration.

``InvestConfig`` is the flat options object consumed by the ledger, the sell
rules and the iteration engine. Defaults are applied once here, at
construction, and keys may be given either in snake_case or in the camelCase
form used by ``config/policy.yaml``.
"""
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvestConfig(BaseModel):
    """Validated investment options"""
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    mode: Literal["simulated", "real"] = "simulated"
    exchange: str = Field(default="binance", min_length=1)
    capital_total: float = Field(default=1000.0, gt=0, alias="capitalTotal")
    capital_per_cycle: float = Field(default=0.30, gt=0, le=1, alias="capitalPerCycle")
    max_positions: int = Field(default=3, gt=0, alias="maxPositions")
    min_boost_power: float = Field(default=0.65, ge=0, le=1, alias="minBoostPower")
    min_predicted_change: float = Field(default=0.0, alias="minPredictedChange")
    take_profit_pct: float = Field(default=10.0, gt=0, alias="takeProfitPct")
    stop_loss_pct: float = Field(default=5.0, gt=0, alias="stopLossPct")
    max_hold_cycles: int = Field(default=3, gt=0, alias="maxHoldCycles")
    fee_pct: float = Field(default=0.10, ge=0, lt=100, alias="feePct", description="Percent of notional per side")
    min_signals: int = Field(default=2, ge=1, alias="minSignals")
    diversification: bool = True
    stable_coin: str = Field(default="USDT", alias="stableCoin")
    api_cost_per_cycle: float = Field(default=0.02, ge=0, alias="apiCostPerCycle")

    @field_validator("exchange")
    @classmethod
    def normalize_exchange(cls, v: str) -> str:
        return v.strip().lower()

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]] = None) -> "InvestConfig":
        """Build from a policy ``invest`` block (missing keys take defaults)."""
        return cls.model_validate(dict(data or {}))

    @property
    def cycle_capital(self) -> float:
        return self.capital_total * self.capital_per_cycle

    def fee_for(self, notional_usd: float) -> float:
        """Fee charged on one side of a trade of the given notional."""
        return notional_usd * self.fee_pct / 100

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)
