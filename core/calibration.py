"""
Calibration Engine: online bias/scale correction of predicted changes.

Closed positions are compared against their prediction and folded into
exponential moving averages per category (INVERTIBLE, APALANCADO) and per
BoostPower sub-range. State is a plain value: ``observe`` returns a new
state and never touches its input, persistence is the caller's concern.

Design:
- bias = predicted - actual (positive means the model overestimates)
- scale = actual / predicted, clamped to [0.1, 5.0]
- the first sample seeds each EMA directly
- corrections are dampened by confidence = min(1, samples / 20)
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.models import Classification, Position

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.25
MIN_SAMPLES = 3
MAX_HISTORY = 60
CONFIDENCE_SATURATION = 20
SCALE_MIN = 0.1
SCALE_MAX = 5.0
STATE_VERSION = 2

CALIBRATED_CATEGORIES = (Classification.INVERTIBLE, Classification.APALANCADO)

# Upper bounds (exclusive) of each BoostPower sub-range; the last one is open
BOOST_RANGES = {
    Classification.INVERTIBLE: (("0.65-0.75", 0.75), ("0.75-0.85", 0.85), ("0.85-1.00", None)),
    Classification.APALANCADO: (("0.40-0.55", 0.55), ("0.55-0.65", None)),
}


def boost_range_for(boost_power: float, category: Classification) -> Optional[str]:
    for label, upper in BOOST_RANGES.get(category, ()):
        if upper is None or boost_power < upper:
            return label
    return None


def _ema(previous: float, value: float, seeded: bool) -> float:
    if not seeded:
        return value
    return previous * (1 - EMA_ALPHA) + value * EMA_ALPHA


@dataclass
class BoostRangeCalibration:
    n: int = 0
    bias_ema: float = 0.0
    scale_ema: float = 1.0
    mae_ema: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"n": self.n, "biasEMA": self.bias_ema, "scaleEMA": self.scale_ema, "maeEMA": self.mae_ema}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoostRangeCalibration":
        return cls(
            n=int(data.get("n", 0)),
            bias_ema=float(data.get("biasEMA", 0.0)),
            scale_ema=float(data.get("scaleEMA", 1.0)),
            mae_ema=float(data.get("maeEMA", 0.0)),
        )


@dataclass
class CategoryCalibration:
    samples: int = 0
    bias_ema: float = 0.0
    scale_ema: float = 1.0
    mae_ema: float = 0.0
    history: List[Dict[str, Any]] = field(default_factory=list)
    by_boost_range: Dict[str, BoostRangeCalibration] = field(default_factory=dict)

    @classmethod
    def empty(cls, category: Classification) -> "CategoryCalibration":
        ranges = {label: BoostRangeCalibration() for label, _ in BOOST_RANGES[category]}
        return cls(by_boost_range=ranges)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "biasEMA": self.bias_ema,
            "scaleEMA": self.scale_ema,
            "maeEMA": self.mae_ema,
            "history": list(self.history),
            "byBoostRange": {k: v.to_dict() for k, v in self.by_boost_range.items()},
        }

    @classmethod
    def from_dict(cls, category: Classification, data: Mapping[str, Any]) -> "CategoryCalibration":
        entry = cls.empty(category)
        entry.samples = int(data.get("samples", 0))
        entry.bias_ema = float(data.get("biasEMA", 0.0))
        entry.scale_ema = float(data.get("scaleEMA", 1.0))
        entry.mae_ema = float(data.get("maeEMA", 0.0))
        entry.history = list(data.get("history") or [])[:MAX_HISTORY]
        for label, raw in (data.get("byBoostRange") or {}).items():
            entry.by_boost_range[label] = BoostRangeCalibration.from_dict(raw)
        return entry


@dataclass
class CalibrationState:
    """Calibration for every calibrated category."""
    categories: Dict[Classification, CategoryCalibration] = field(default_factory=dict)
    updated_at: Optional[str] = None
    version: int = STATE_VERSION

    @classmethod
    def empty(cls) -> "CalibrationState":
        return cls(categories={cat: CategoryCalibration.empty(cat) for cat in CALIBRATED_CATEGORIES})

    def category(self, category: Classification) -> Optional[CategoryCalibration]:
        return self.categories.get(category)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version, "updatedAt": self.updated_at}
        for cat, entry in self.categories.items():
            data[cat.value] = entry.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CalibrationState":
        state = cls.empty()
        if not data:
            return state
        state.updated_at = data.get("updatedAt")
        state.version = int(data.get("version", STATE_VERSION))
        for cat in CALIBRATED_CATEGORIES:
            raw = data.get(cat.value)
            if isinstance(raw, Mapping):
                state.categories[cat] = CategoryCalibration.from_dict(cat, raw)
        return state


@dataclass(frozen=True)
class CorrectionFactors:
    """Dampened corrections to apply to a raw prediction"""
    bias_correction: float
    scale_correction: float
    confidence: float
    samples: int
    mae_ema: float
    source: str  # "range:<label>" or "global"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "biasCorrection": self.bias_correction,
            "scaleCorrection": self.scale_correction,
            "confidence": self.confidence,
            "samples": self.samples,
            "maeEMA": self.mae_ema,
            "source": self.source,
        }


def observe(state: CalibrationState, position: Position) -> CalibrationState:
    """
    Fold one closed position into the calibration.

    Positions outside the calibrated categories, with no prediction, or
    without realized PnL leave the state unchanged (the same object is
    returned).
    """
    category = position.classification
    if category not in CALIBRATED_CATEGORIES:
        return state
    predicted = position.predicted_change
    if predicted == 0 or position.realized_pnl_pct is None:
        return state

    actual = position.realized_pnl_pct
    error = predicted - actual
    abs_error = abs(error)
    scale = max(SCALE_MIN, min(SCALE_MAX, actual / predicted))

    new_state = copy.deepcopy(state)
    entry = new_state.categories.setdefault(category, CategoryCalibration.empty(category))
    seeded = entry.samples > 0
    entry.bias_ema = _ema(entry.bias_ema, error, seeded)
    entry.scale_ema = _ema(entry.scale_ema, scale, seeded)
    entry.mae_ema = _ema(entry.mae_ema, abs_error, seeded)
    entry.samples += 1

    entry.history.insert(0, {
        "symbol": position.symbol,
        "predicted": round(predicted, 2),
        "actual": round(actual, 2),
        "error": round(error, 2),
        "scale": round(scale, 3),
        "bp": round(position.boost_power, 3),
        "ts": position.closed_at or datetime.now(timezone.utc).isoformat(),
    })
    del entry.history[MAX_HISTORY:]

    label = boost_range_for(position.boost_power, category)
    if label is not None:
        bucket = entry.by_boost_range.setdefault(label, BoostRangeCalibration())
        bucket_seeded = bucket.n > 0
        bucket.bias_ema = _ema(bucket.bias_ema, error, bucket_seeded)
        bucket.scale_ema = _ema(bucket.scale_ema, scale, bucket_seeded)
        bucket.mae_ema = _ema(bucket.mae_ema, abs_error, bucket_seeded)
        bucket.n += 1

    new_state.updated_at = datetime.now(timezone.utc).isoformat()
    logger.debug(
        f"Calibration {category.value} n={entry.samples} bias={entry.bias_ema:.3f} "
        f"scale={entry.scale_ema:.3f} mae={entry.mae_ema:.3f}"
    )
    return new_state


def correction_factors(
    state: CalibrationState, category: Classification, boost_power: float
) -> Optional[CorrectionFactors]:
    """Corrections for a new prediction, or None below the minimum sample count."""
    entry = state.category(Classification.from_raw(category))
    if entry is None or entry.samples < MIN_SAMPLES:
        return None

    label = boost_range_for(boost_power, Classification.from_raw(category))
    bucket = entry.by_boost_range.get(label) if label else None
    use_range = bucket is not None and bucket.n >= MIN_SAMPLES

    bias = bucket.bias_ema if use_range else entry.bias_ema
    scale = bucket.scale_ema if use_range else entry.scale_ema
    confidence = min(1.0, entry.samples / CONFIDENCE_SATURATION)

    return CorrectionFactors(
        bias_correction=bias * confidence,
        scale_correction=1 + (scale - 1) * confidence,
        confidence=confidence,
        samples=entry.samples,
        mae_ema=entry.mae_ema,
        source=f"range:{label}" if use_range else "global",
    )


def rebuild(closed_positions: Iterable[Position]) -> CalibrationState:
    """Replay all closed positions, oldest first, into a fresh state."""
    eligible = [
        p for p in closed_positions
        if not p.is_open
        and p.realized_pnl_pct is not None
        and p.classification in CALIBRATED_CATEGORIES
    ]
    eligible.sort(key=lambda p: p.closed_at or "")

    state = CalibrationState.empty()
    for position in eligible:
        state = observe(state, position)
    logger.info(f"Rebuilt calibration from {len(eligible)} closed positions")
    return state


def _diagnosis(entry: CategoryCalibration) -> str:
    if entry.samples < MIN_SAMPLES:
        return "Not enough data"

    parts = []
    if abs(entry.bias_ema) > 5:
        if entry.bias_ema > 0:
            parts.append(f"Overestimating by ~{entry.bias_ema:.1f}% systematically")
        else:
            parts.append(f"Underestimating by ~{abs(entry.bias_ema):.1f}% systematically")

    if entry.scale_ema < 0.5:
        parts.append(f"Assets realize only {entry.scale_ema * 100:.0f}% of the predicted move")
    elif entry.scale_ema > 2:
        parts.append(f"Assets realize {entry.scale_ema * 100:.0f}% of the predicted move; model is too conservative")

    if entry.mae_ema > 15:
        parts.append(f"High mean error (MAE {entry.mae_ema:.1f}%)")
    elif entry.mae_ema < 5:
        parts.append(f"Low mean error (MAE {entry.mae_ema:.1f}%)")

    return ". ".join(parts) if parts else "Calibration within normal range"


def build_calibration_report(state: Optional[CalibrationState]) -> Dict[str, Any]:
    """Human-oriented summary of the calibration per category."""
    if state is None:
        return {"status": "no_data"}

    report: Dict[str, Any] = {
        "version": state.version,
        "updatedAt": state.updated_at,
        "status": "active",
        "categories": {},
    }
    for cat in CALIBRATED_CATEGORIES:
        entry = state.category(cat)
        if entry is None:
            continue
        if entry.samples >= 10:
            quality = "good"
        elif entry.samples >= MIN_SAMPLES:
            quality = "growing"
        else:
            quality = "insufficient"
        report["categories"][cat.value] = {
            "samples": entry.samples,
            "hasEnough": entry.samples >= MIN_SAMPLES,
            "bias": round(entry.bias_ema, 2),
            "scale": round(entry.scale_ema, 3),
            "maeEMA": round(entry.mae_ema, 2),
            "quality": quality,
            "diagnosis": _diagnosis(entry),
            "recentHistory": entry.history[:10],
            "byBoostRange": {k: v.to_dict() for k, v in entry.by_boost_range.items()},
        }
    return report
