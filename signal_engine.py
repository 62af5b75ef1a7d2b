"""Weighted technical signal for one symbol.

Indicators are computed on the closed-candle slice (every row but the
last) so an in-progress candle never triggers an entry; the last row's
close is only carried along as the execution reference price.

Component scores
----------------
* ``rsi`` – logistic mapping that rises as RSI falls below the oversold
  threshold, falls as it climbs above overbought and is 0.5 in between.
* ``ema`` – 1 when the fast EMA is above the slow EMA.
* ``atr`` – 1 when ATR% lies inside the configured band (inclusive).
* ``vol`` – 1 when the volume z-score reaches the configured minimum.

Confidence is the weight-normalised sum of the component scores.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

import indicators
from config import SIDE_BIAS_BOTH, SIDE_BIAS_LONG_ONLY
from log_utils import setup_logger

logger = setup_logger(__name__)

ACTION_BUY = "BUY"
ACTION_SELL = "SELL"
ACTION_NONE = "NONE"

RSI_PERIOD = 14
ATR_PERIOD = 14
VOLUME_Z_PERIOD = 20
ATR_AVERAGE_WINDOW = 10
EXTREME_OVERSOLD_RSI = 30.0
RSI_SCORE_SLOPE = 0.2

WEIGHT_KEYS = ("w_rsi", "w_ema", "w_atr", "w_vol")
_SCORE_KEYS = {"w_rsi": "rsi", "w_ema": "ema", "w_atr": "atr", "w_vol": "vol"}


@dataclass(frozen=True)
class StrategyParams:
    """Thresholds the engine evaluates a candle series against."""

    rsi_oversold: float = 38.0
    rsi_overbought: float = 62.0
    ema_fast: int = 20
    ema_slow: int = 50
    ema_regime: int = 200
    atr_low_pct: float = 0.4
    atr_high_pct: float = 2.0
    vol_z_min: float = 0.5
    confidence_threshold: float = 0.65
    side_bias: str = SIDE_BIAS_LONG_ONLY
    momentum_confirmation: bool = True


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: float
    ema_fast: float
    ema_slow: float
    ema_regime: float
    ema_fast_prev: float
    atr: float
    atr_pct: float
    vol_z: float
    close: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "rsi": self.rsi,
            "ema20": self.ema_fast,
            "ema50": self.ema_slow,
            "ema200": self.ema_regime,
            "ema20_prev": self.ema_fast_prev,
            "atr": self.atr,
            "atr_pct": self.atr_pct,
            "vol_z": self.vol_z,
        }


@dataclass
class Signal:
    symbol: str
    timestamp: datetime
    execution_price: float
    signal_price: float
    atr: float
    indicators: IndicatorSnapshot
    component_scores: Dict[str, float]
    confidence: float
    conditions: Dict[str, bool]
    action: str = ACTION_NONE
    volatility_label: str = "MED"
    reasons: List[str] = field(default_factory=list)

    @property
    def is_buy(self) -> bool:
        return self.action == ACTION_BUY

    def summary(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "rsi": self.indicators.rsi,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def rsi_score(rsi: float, oversold: float, overbought: float) -> float:
    """Map RSI onto ``[0, 1]``; deeper oversold scores higher."""

    if rsi < oversold:
        return _sigmoid(RSI_SCORE_SLOPE * (oversold - rsi))
    if rsi > overbought:
        return 1.0 - _sigmoid(RSI_SCORE_SLOPE * (rsi - overbought))
    return 0.5


def weighted_confidence(scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    total = 0.0
    weight_sum = 0.0
    for key in WEIGHT_KEYS:
        weight = float(weights.get(key, 0.0))
        total += float(scores.get(_SCORE_KEYS[key], 0.0)) * weight
        weight_sum += weight
    if weight_sum <= 0:
        return 0.0
    return total / weight_sum


def volatility_label(atr_pct: float, params: StrategyParams) -> str:
    if atr_pct < params.atr_low_pct:
        return "LOW"
    if atr_pct > params.atr_high_pct:
        return "HIGH"
    return "MED"


def _or(value: Optional[float], fallback: float) -> float:
    if value is None or math.isnan(value) or math.isinf(value):
        return fallback
    return float(value)


def compute_indicators(candles: pd.DataFrame, params: StrategyParams) -> IndicatorSnapshot:
    """Indicators on the closed-candle slice with per-field fallbacks."""

    closed = candles.iloc[:-1] if len(candles) > 1 else candles
    closes = closed["close"].to_numpy(dtype=float)
    highs = closed["high"].to_numpy(dtype=float)
    lows = closed["low"].to_numpy(dtype=float)
    volumes = closed["volume"].to_numpy(dtype=float)
    last_close = float(closes[-1]) if closes.size else 0.0

    ema_fast = _or(indicators.ema(closes, params.ema_fast), last_close)
    prev_close = float(closes[-2]) if closes.size > 1 else last_close
    ema_fast_prev = _or(indicators.ema(closes[:-1], params.ema_fast), prev_close)
    return IndicatorSnapshot(
        rsi=_or(indicators.rsi(closes, RSI_PERIOD), 50.0),
        ema_fast=ema_fast,
        ema_slow=_or(indicators.ema(closes, params.ema_slow), last_close),
        ema_regime=_or(indicators.ema(closes, params.ema_regime), last_close),
        ema_fast_prev=ema_fast_prev,
        atr=_or(indicators.atr(highs, lows, closes, ATR_PERIOD), 0.01),
        atr_pct=_or(
            indicators.atr_percent_average(highs, lows, closes, ATR_PERIOD, ATR_AVERAGE_WINDOW),
            0.01,
        ),
        vol_z=_or(indicators.zscore(volumes, VOLUME_Z_PERIOD), 0.0),
        close=last_close,
    )


def build_signal(
    symbol: str,
    snapshot: IndicatorSnapshot,
    execution_price: float,
    signal_price: float,
    params: StrategyParams,
    weights: Mapping[str, float],
    timestamp: Optional[datetime] = None,
) -> Signal:
    """Score ``snapshot`` and decide BUY, SELL or NONE."""

    rsi = snapshot.rsi
    extreme_oversold = rsi < EXTREME_OVERSOLD_RSI
    conditions = {
        "long_allowed": params.side_bias in (SIDE_BIAS_LONG_ONLY, SIDE_BIAS_BOTH),
        "bullish_regime": signal_price > snapshot.ema_regime or extreme_oversold,
        "bullish_trend": snapshot.ema_fast > snapshot.ema_slow,
        "oversold": rsi < params.rsi_oversold,
        "overbought": rsi > params.rsi_overbought,
        "momentum": (snapshot.ema_fast > snapshot.ema_fast_prev) if params.momentum_confirmation else True,
        "volatility_ok": params.atr_low_pct <= snapshot.atr_pct <= params.atr_high_pct,
        "volume_ok": snapshot.vol_z >= params.vol_z_min,
    }
    scores = {
        "rsi": rsi_score(rsi, params.rsi_oversold, params.rsi_overbought),
        "ema": 1.0 if conditions["bullish_trend"] else 0.0,
        "atr": 1.0 if conditions["volatility_ok"] else 0.0,
        "vol": 1.0 if conditions["volume_ok"] else 0.0,
    }
    confidence = weighted_confidence(scores, weights)
    conditions["confident"] = confidence >= params.confidence_threshold

    reasons: List[str] = []
    if not conditions["long_allowed"]:
        reasons.append(f"side bias {params.side_bias} forbids longs")
    if not conditions["bullish_regime"]:
        reasons.append(f"bearish regime (price {signal_price:.2f} <= EMA{params.ema_regime} {snapshot.ema_regime:.2f})")
    if not conditions["bullish_trend"]:
        reasons.append(f"bearish trend (EMA{params.ema_fast} {snapshot.ema_fast:.2f} <= EMA{params.ema_slow} {snapshot.ema_slow:.2f})")
    if not conditions["oversold"]:
        reasons.append(f"RSI {rsi:.1f} not below {params.rsi_oversold}")
    if not conditions["momentum"]:
        reasons.append(f"EMA{params.ema_fast} not rising")
    if not conditions["volatility_ok"]:
        reasons.append(
            f"ATR {snapshot.atr_pct:.3f}% outside {params.atr_low_pct}-{params.atr_high_pct}%"
        )
    if not conditions["volume_ok"]:
        reasons.append(f"volume z {snapshot.vol_z:.2f} below {params.vol_z_min}")
    if not conditions["confident"]:
        reasons.append(f"confidence {confidence:.3f} below {params.confidence_threshold:.3f}")

    buy_keys = (
        "long_allowed",
        "bullish_regime",
        "bullish_trend",
        "oversold",
        "momentum",
        "volatility_ok",
        "volume_ok",
        "confident",
    )
    action = ACTION_NONE
    if all(conditions[key] for key in buy_keys):
        action = ACTION_BUY
    elif params.side_bias == SIDE_BIAS_BOTH and (
        conditions["overbought"] or signal_price <= snapshot.ema_regime
    ):
        action = ACTION_SELL

    signal = Signal(
        symbol=symbol,
        timestamp=timestamp or datetime.now(),
        execution_price=float(execution_price),
        signal_price=float(signal_price),
        atr=snapshot.atr,
        indicators=snapshot,
        component_scores=scores,
        confidence=confidence,
        conditions=conditions,
        action=action,
        volatility_label=volatility_label(snapshot.atr_pct, params),
        reasons=[] if action == ACTION_BUY else reasons,
    )
    if action == ACTION_BUY:
        logger.info("BUY signal %s: confidence=%.3f RSI=%.1f", symbol, confidence, rsi)
    elif conditions["oversold"]:
        logger.info("%s RSI oversold (%.1f) but no BUY: %s", symbol, rsi, "; ".join(reasons))
    else:
        logger.debug("%s action=%s confidence=%.3f", symbol, action, confidence)
    return signal


def evaluate_signal(
    symbol: str,
    candles: pd.DataFrame,
    params: StrategyParams,
    weights: Mapping[str, float],
    snapshot: Optional[IndicatorSnapshot] = None,
    timestamp: Optional[datetime] = None,
) -> Signal:
    """Compute indicators (unless supplied) and build the signal for ``candles``."""

    if snapshot is None:
        snapshot = compute_indicators(candles, params)
    closes = candles["close"]
    execution_price = float(closes.iloc[-1])
    signal_price = float(closes.iloc[-2]) if len(closes) > 1 else execution_price
    return build_signal(symbol, snapshot, execution_price, signal_price, params, weights, timestamp)


__all__ = [
    "ACTION_BUY",
    "ACTION_NONE",
    "ACTION_SELL",
    "IndicatorSnapshot",
    "Signal",
    "StrategyParams",
    "WEIGHT_KEYS",
    "build_signal",
    "compute_indicators",
    "evaluate_signal",
    "rsi_score",
    "volatility_label",
    "weighted_confidence",
]
