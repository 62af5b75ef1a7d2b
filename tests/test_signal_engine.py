from dataclasses import replace
from datetime import datetime

import numpy as np
import pandas as pd
import pytest

import signal_engine
from config import SIDE_BIAS_BOTH
from signal_engine import (
    ACTION_BUY,
    ACTION_NONE,
    ACTION_SELL,
    IndicatorSnapshot,
    StrategyParams,
    build_signal,
    rsi_score,
    weighted_confidence,
)

EQUAL_WEIGHTS = {"w_rsi": 0.25, "w_ema": 0.25, "w_atr": 0.25, "w_vol": 0.25}
NOW = datetime(2024, 5, 1, 12, 0)


def _snapshot(**overrides):
    values = dict(
        rsi=34.0,
        ema_fast=100.5,
        ema_slow=100.0,
        ema_regime=99.0,
        ema_fast_prev=100.4,
        atr=0.5,
        atr_pct=0.5,
        vol_z=1.0,
        close=100.5,
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)


def _build(snapshot, params=None, signal_price=100.5, weights=EQUAL_WEIGHTS):
    params = params or StrategyParams(confidence_threshold=0.5)
    return build_signal("X/Q", snapshot, 100.6, signal_price, params, weights, NOW)


def test_accepted_buy_scenario():
    signal = _build(_snapshot())
    assert signal.action == ACTION_BUY
    expected = (rsi_score(34.0, 38.0, 62.0) + 3.0) / 4.0
    assert signal.confidence == pytest.approx(expected)
    assert signal.confidence >= 0.85
    assert signal.execution_price == 100.6
    assert signal.reasons == []
    assert signal.summary()["action"] == ACTION_BUY


def test_rsi_score_shape():
    assert rsi_score(50.0, 38.0, 62.0) == 0.5
    assert rsi_score(20.0, 38.0, 62.0) > rsi_score(34.0, 38.0, 62.0) > 0.5
    assert rsi_score(80.0, 38.0, 62.0) < 0.5


def test_rsi_equal_to_oversold_is_not_oversold():
    signal = _build(_snapshot(rsi=38.0))
    assert signal.conditions["oversold"] is False
    assert signal.action == ACTION_NONE
    assert any("not below" in reason for reason in signal.reasons)


def test_extreme_oversold_bypasses_regime_filter():
    snapshot = _snapshot(rsi=29.0, ema_regime=101.0)
    signal = _build(snapshot, signal_price=100.5)
    assert signal.conditions["bullish_regime"] is True
    assert signal.action == ACTION_BUY


def test_regime_filter_blocks_without_extreme_rsi():
    snapshot = _snapshot(rsi=32.0, ema_regime=101.0)
    signal = _build(snapshot, signal_price=100.5)
    assert signal.action == ACTION_NONE
    assert any("bearish regime" in reason for reason in signal.reasons)


@pytest.mark.parametrize("atr_pct", [0.4, 2.0])
def test_atr_band_is_inclusive(atr_pct):
    signal = _build(_snapshot(atr_pct=atr_pct))
    assert signal.conditions["volatility_ok"] is True
    assert signal.action == ACTION_BUY


def test_confidence_exactly_at_threshold_passes():
    snapshot = _snapshot()
    scores = {"rsi": rsi_score(34.0, 38.0, 62.0), "ema": 1.0, "atr": 1.0, "vol": 1.0}
    threshold = weighted_confidence(scores, EQUAL_WEIGHTS)
    signal = _build(snapshot, StrategyParams(confidence_threshold=threshold))
    assert signal.action == ACTION_BUY
    higher = _build(snapshot, StrategyParams(confidence_threshold=threshold + 1e-6))
    assert higher.action == ACTION_NONE


def test_momentum_confirmation_requires_rising_fast_ema():
    snapshot = _snapshot(ema_fast_prev=100.6)
    assert _build(snapshot).action == ACTION_NONE
    relaxed = StrategyParams(confidence_threshold=0.5, momentum_confirmation=False)
    assert _build(snapshot, relaxed).action == ACTION_BUY


def test_zero_weights_give_zero_confidence():
    zero = {key: 0.0 for key in EQUAL_WEIGHTS}
    assert weighted_confidence({"rsi": 1, "ema": 1, "atr": 1, "vol": 1}, zero) == 0.0


def test_sell_only_with_both_side_bias():
    overbought = _snapshot(rsi=70.0)
    assert _build(overbought).action == ACTION_NONE
    both = StrategyParams(confidence_threshold=0.5, side_bias=SIDE_BIAS_BOTH)
    assert _build(overbought, both).action == ACTION_SELL


def _candles(closes):
    n = len(closes)
    return pd.DataFrame(
        {
            "timestamp": np.arange(n, dtype="int64") * 60_000,
            "open": closes,
            "high": [c + 0.5 for c in closes],
            "low": [c - 0.5 for c in closes],
            "close": closes,
            "volume": [1.0] * n,
        }
    )


def test_indicators_use_closed_candles_only():
    closes = [100.0 + 0.01 * i for i in range(220)]
    closes[-1] = 500.0
    candles = _candles(closes)
    params = StrategyParams()
    snapshot = signal_engine.compute_indicators(candles, params)
    assert snapshot.close == pytest.approx(closes[-2])
    signal = signal_engine.evaluate_signal("X/Q", candles, params, EQUAL_WEIGHTS, timestamp=NOW)
    assert signal.execution_price == 500.0
    assert signal.signal_price == pytest.approx(closes[-2])
    # uptrend without losses: RSI saturates and nothing is oversold
    assert snapshot.rsi == 100.0
    assert signal.action == ACTION_NONE


def test_short_series_uses_fallbacks():
    candles = _candles([100.0, 101.0, 102.0])
    snapshot = signal_engine.compute_indicators(candles, StrategyParams())
    assert snapshot.rsi == 50.0
    assert snapshot.atr == 0.01
    assert snapshot.ema_regime == 101.0
    assert snapshot.vol_z == 0.0


def test_volatility_label():
    params = StrategyParams()
    assert signal_engine.volatility_label(0.1, params) == "LOW"
    assert signal_engine.volatility_label(1.0, params) == "MED"
    assert signal_engine.volatility_label(3.0, replace(params, atr_high_pct=2.5)) == "HIGH"
