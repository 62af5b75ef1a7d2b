from datetime import datetime, timedelta

from risk_gate import RiskLimits, daily_limits_ok, evaluate_trade
from signal_engine import ACTION_BUY, ACTION_NONE, ACTION_SELL, IndicatorSnapshot, Signal

NOW = datetime(2024, 5, 1, 12, 0)
LIMITS = RiskLimits(max_daily_loss=5.0, max_daily_trades=10, cooldown_minutes=5)


def _signal(action=ACTION_BUY, confidence=0.8):
    snapshot = IndicatorSnapshot(
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
    return Signal(
        symbol="X/Q",
        timestamp=NOW,
        execution_price=100.6,
        signal_price=100.5,
        atr=0.5,
        indicators=snapshot,
        component_scores={},
        confidence=confidence,
        conditions={},
        action=action,
    )


def _evaluate(signal, **overrides):
    kwargs = dict(
        realized_pnl=0.0,
        trades_count=0,
        has_position=False,
        confidence_threshold=0.65,
        now=NOW,
    )
    kwargs.update(overrides)
    return evaluate_trade(signal, LIMITS, **kwargs)


def test_buy_approved_within_limits():
    decision = _evaluate(_signal())
    assert decision.allowed
    assert decision.reason == "OK"


def test_daily_loss_limit_rejects_buy():
    decision = _evaluate(_signal(), realized_pnl=-5.0)
    assert not decision
    assert "daily loss limit" in decision.reason


def test_daily_trade_limit_rejects_buy():
    decision = _evaluate(_signal(), trades_count=10)
    assert not decision
    assert "daily trade limit" in decision.reason
    assert daily_limits_ok(LIMITS, 0.0, 9)


def test_cooldown_after_loss():
    recent = _evaluate(_signal(), last_trade_time=NOW - timedelta(minutes=3), last_trade_pnl=-1.0)
    assert not recent
    assert "cooldown" in recent.reason
    later = _evaluate(_signal(), last_trade_time=NOW - timedelta(minutes=6), last_trade_pnl=-1.0)
    assert later


def test_no_cooldown_after_win():
    decision = _evaluate(_signal(), last_trade_time=NOW - timedelta(minutes=1), last_trade_pnl=2.0)
    assert decision


def test_buy_rejected_while_position_open():
    decision = _evaluate(_signal(), has_position=True)
    assert decision.reason == "position already open"


def test_sell_requires_position():
    assert _evaluate(_signal(ACTION_SELL), has_position=False).reason == "no position to sell"
    assert _evaluate(_signal(ACTION_SELL), has_position=True)


def test_confidence_threshold_is_inclusive():
    assert _evaluate(_signal(confidence=0.65))
    below = _evaluate(_signal(confidence=0.649))
    assert not below
    assert "below threshold" in below.reason


def test_missing_or_inactive_signal_rejected():
    assert not _evaluate(None)
    assert not _evaluate(_signal(ACTION_NONE))
